"""HTTP client for the agent runtime (OpenCode-style server API).

Covers session listing and status, session creation, fire-and-forget
prompt dispatch, message history (for cost seeding) and the ``/event``
server-sent event stream.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from threadlink.engine.config import AgentConfig
from threadlink.engine.errors import AgentRuntimeError
from threadlink.engine.models import ModelSelection, RuntimeSession, TokenUsage

logger = logging.getLogger(__name__)

RawEventHandler = Callable[[dict[str, Any]], Awaitable[None]]

EVENT_RECONNECT_BASE_SECONDS = 1.0
EVENT_RECONNECT_MAX_SECONDS = 30.0


def text_part(text: str) -> dict[str, str]:
    return {"type": "text", "text": text}


def sum_assistant_usage(messages: list[dict[str, Any]]) -> TokenUsage:
    """Total usage of every assistant message in a session history."""
    total = TokenUsage()
    for message in messages:
        info = message.get("info") if "info" in message else message
        if not isinstance(info, dict) or info.get("role") != "assistant":
            continue
        total = total + TokenUsage.from_api(info.get("tokens"), info.get("cost"))
    return total


class AgentClient:
    """Async client for one agent runtime server."""

    def __init__(
        self,
        config: AgentConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._events_task: asyncio.Task | None = None
        self.events_connected = False

    @property
    def base_url(self) -> str:
        return self._config.base_url.rstrip("/")

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        await self.stop_events()
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json_body: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        if self._session is None:
            raise AgentRuntimeError(operation, "client not started")
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
        try:
            async with self._session.request(
                method, self.base_url + path, json=json_body, params=params, timeout=timeout,
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise AgentRuntimeError(operation, body[:200] or resp.reason or "", resp.status)
                if resp.status == 204:
                    return None
                text = await resp.text()
                return json.loads(text) if text.strip() else None
        except AgentRuntimeError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise AgentRuntimeError(operation, str(exc) or type(exc).__name__) from exc

    async def list_sessions(self) -> list[RuntimeSession]:
        data = await self._request("GET", "/session", "list_sessions")
        sessions: list[RuntimeSession] = []
        for item in data or []:
            try:
                sessions.append(RuntimeSession.from_api(item))
            except (KeyError, TypeError) as exc:
                logger.warning("Skipping malformed session entry: %s", exc)
        return sessions

    async def get_session_status(self) -> dict[str, dict[str, Any]]:
        data = await self._request("GET", "/session/status", "get_session_status")
        return data if isinstance(data, dict) else {}

    async def create_session(
        self,
        directory: str | None = None,
        title: str | None = None,
    ) -> RuntimeSession:
        body: dict[str, Any] = {}
        if title:
            body["title"] = title
        params = {"directory": directory} if directory else None
        data = await self._request(
            "POST", "/session", "create_session", json_body=body, params=params,
        )
        session = RuntimeSession.from_api(data)
        logger.info("Created agent session %s in %s", session.id[:8], session.directory or "(default)")
        return session

    async def dispatch_prompt(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        model: ModelSelection | None = None,
    ) -> None:
        """Queue a prompt; the response arrives on the event stream."""
        body: dict[str, Any] = {"parts": parts}
        if model is not None:
            body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}
        await self._request(
            "POST", f"/session/{session_id}/prompt_async", "dispatch_prompt", json_body=body,
        )

    async def list_messages(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/session/{session_id}/message", "list_messages")
        return data if isinstance(data, list) else []

    async def prior_usage(self, session_id: str) -> TokenUsage:
        return sum_assistant_usage(await self.list_messages(session_id))

    # ── Event stream ────────────────────────────────────────

    def start_events(self, handler: RawEventHandler) -> None:
        if self._events_task is None or self._events_task.done():
            self._events_task = asyncio.create_task(self._event_loop(handler))

    async def stop_events(self) -> None:
        if self._events_task is None:
            return
        self._events_task.cancel()
        try:
            await self._events_task
        except asyncio.CancelledError:
            pass
        self._events_task = None
        self.events_connected = False

    async def _event_loop(self, handler: RawEventHandler) -> None:
        attempts = 0
        while True:
            try:
                await self._read_events(handler)
                attempts = 0
            except asyncio.CancelledError:
                logger.info("Agent event stream stopped")
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, AgentRuntimeError) as exc:
                logger.warning("Agent event stream error: %s", exc)
            self.events_connected = False
            delay = min(EVENT_RECONNECT_BASE_SECONDS * 2 ** attempts, EVENT_RECONNECT_MAX_SECONDS)
            attempts += 1
            await asyncio.sleep(delay)

    async def _read_events(self, handler: RawEventHandler) -> None:
        if self._session is None:
            raise AgentRuntimeError("events", "client not started")
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._config.request_timeout_seconds)
        async with self._session.get(
            self.base_url + "/event",
            headers={"Accept": "text/event-stream"},
            timeout=timeout,
        ) as resp:
            if resp.status >= 400:
                raise AgentRuntimeError("events", resp.reason or "", resp.status)
            self.events_connected = True
            logger.info("Agent event stream connected")
            data_lines: list[str] = []
            async for raw in resp.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line or not data_lines:
                    continue
                payload = "\n".join(data_lines)
                data_lines = []
                await self._deliver(handler, payload)
        logger.info("Agent event stream ended")

    async def _deliver(self, handler: RawEventHandler, payload: str) -> None:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug("Ignoring non-JSON event payload")
            return
        if not isinstance(data, dict):
            return
        try:
            await handler(data)
        except Exception:
            logger.exception("Agent event handler failed for %s", data.get("type"))
