"""HTTP control API for a running bridge.

Local-only REST surface for the host: health, bridge status, session
listing, default-session selection, persisted mappings and monitor
registration.

Usage:
    threadlink run [--port PORT]
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from typing import Any

from aiohttp import web

from threadlink.engine.bridge import Bridge
from threadlink.engine.models import SessionInfo, ThreadSessionMapping

logger = logging.getLogger(__name__)


def session_to_dict(session: SessionInfo) -> dict[str, Any]:
    return {
        "id": session.id,
        "short_id": session.short_id,
        "project_name": session.project_name,
        "directory": session.directory,
        "title": session.title,
        "last_updated": session.last_updated.isoformat(),
        "is_available": session.is_available,
    }


def mapping_to_dict(mapping: ThreadSessionMapping) -> dict[str, Any]:
    return mapping.to_dict()


class ControlServer:
    """aiohttp application exposing the bridge to local tooling."""

    def __init__(self, bridge: Bridge, host: str = "127.0.0.1", port: int = 8765) -> None:
        self._bridge = bridge
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-threadlink-request-id", str(uuid.uuid4())[:8])
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
            )
            return response
        except Exception:
            logger.exception("HTTP %s %s req=%s failed", request.method, request.path_qs, req_id)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/status", self._handle_status)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions/{id}/default", self._handle_set_default)
        r.add_get("/mappings", self._handle_list_mappings)
        r.add_post("/monitor/{id}", self._handle_monitor)

    # ── Lifecycle ──

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Control API listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        """Run the bridge and the API until cancelled."""
        await self._bridge.start()
        await self.start()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Shutting down")
        finally:
            await self.stop()
            await self._bridge.stop()

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._bridge.status())

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        registry = self._bridge.registry
        if request.query.get("refresh", "").lower() in {"1", "true", "yes"}:
            await registry.refresh()
        default = registry.get_default()
        return web.json_response({
            "sessions": [session_to_dict(s) for s in registry.list()],
            "default": default.id if default is not None else None,
        })

    async def _handle_set_default(self, request: web.Request) -> web.Response:
        registry = self._bridge.registry
        session = registry.get(request.match_info["id"])
        if session is None:
            return web.json_response({"error": "session not found"}, status=404)
        if not registry.set_default(session.id):
            return web.json_response({"error": "session not available"}, status=409)
        return web.json_response({"default": session_to_dict(session)})

    async def _handle_list_mappings(self, request: web.Request) -> web.Response:
        store = self._bridge.store
        status = request.query.get("status")
        mappings = store.list_all()
        if status:
            mappings = [m for m in mappings if m.status.value == status]
        return web.json_response({
            "mappings": [mapping_to_dict(m) for m in mappings],
            "stats": store.stats(),
        })

    async def _handle_monitor(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        user_id = body.get("user_id") if isinstance(body, dict) else None
        if not user_id:
            return web.json_response({"error": "user_id is required"}, status=400)
        session = self._bridge.registry.get(request.match_info["id"])
        if session is None:
            return web.json_response({"error": "session not found"}, status=404)
        entry = self._bridge.monitor.register(session, str(user_id))
        return web.json_response({
            "session_id": entry.session_id,
            "short_id": entry.short_id,
            "user_id": entry.user_id,
        }, status=201)
