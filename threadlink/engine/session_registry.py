"""Registry of agent sessions discovered from the runtime.

Discovery is poll-plus-diff: ``refresh()`` lists the runtime's sessions
and compares against what is known. Push events from the runtime event
stream (``handle_session_created`` / ``handle_session_deleted``) feed
the same observers, so consumers never know which path found a session.

Entries that disappear are kept with ``is_available=False`` for a grace
period, then pruned.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Protocol

from threadlink.shared.formatting import utcnow

from .config import fire_observers
from .errors import AgentRuntimeError
from .models import RuntimeSession, SessionInfo

logger = logging.getLogger(__name__)

SessionObserver = Callable[[SessionInfo], Awaitable[None] | None]


class SessionSource(Protocol):
    async def list_sessions(self) -> list[RuntimeSession]: ...


class SessionRegistry:
    """Tracks which agent sessions exist and which one is the default."""

    def __init__(
        self,
        source: SessionSource,
        refresh_interval: float = 60.0,
        unavailable_grace_seconds: float = 3600.0,
    ) -> None:
        self._source = source
        self._refresh_interval = refresh_interval
        self._grace = timedelta(seconds=unavailable_grace_seconds)
        self._sessions: dict[str, SessionInfo] = {}
        self._default_id: str | None = None
        self._pinned_default = False
        self._new_observers: list[SessionObserver] = []
        self._gone_observers: list[SessionObserver] = []
        self._task: asyncio.Task | None = None
        self.last_refresh_at: datetime | None = None
        self.last_refresh_ok: bool | None = None

    # ── Observers ───────────────────────────────────────────

    def on_new_session(self, callback: SessionObserver) -> None:
        self._new_observers.append(callback)

    def on_session_gone(self, callback: SessionObserver) -> None:
        self._gone_observers.append(callback)

    # ── Discovery ───────────────────────────────────────────

    async def refresh(self) -> bool:
        """Poll the runtime and diff against known sessions.

        Returns False (state untouched) when the runtime is unreachable.
        """
        try:
            listed = await self._source.list_sessions()
        except AgentRuntimeError as exc:
            logger.warning("Session refresh failed, keeping %d known session(s): %s",
                           len(self._sessions), exc)
            self.last_refresh_ok = False
            return False
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Session refresh failed (transport): %s", exc)
            self.last_refresh_ok = False
            return False

        now = utcnow()
        seen: set[str] = set()
        appeared: list[SessionInfo] = []
        gone: list[SessionInfo] = []

        for runtime in listed:
            if runtime.parent_id:
                continue
            seen.add(runtime.id)
            fresh = SessionInfo.from_runtime(runtime)
            known = self._sessions.get(runtime.id)
            if known is None:
                self._sessions[runtime.id] = fresh
                appeared.append(fresh)
                continue
            was_available = known.is_available
            known.short_id = fresh.short_id
            known.project_name = fresh.project_name
            known.directory = fresh.directory
            known.title = fresh.title
            known.last_updated = fresh.last_updated
            known.is_available = True
            known.unavailable_since = None
            if not was_available:
                appeared.append(known)

        for session in self._sessions.values():
            if session.id not in seen and session.is_available:
                session.is_available = False
                session.unavailable_since = now
                gone.append(session)

        self._prune(now)
        self._recompute_default()
        self.last_refresh_at = now
        self.last_refresh_ok = True
        logger.debug(
            "Session refresh: %d listed, %d new, %d gone, %d available",
            len(seen), len(appeared), len(gone), self.count_available(),
        )

        for session in appeared:
            logger.info("Session discovered: %s (%s)", session.short_id, session.project_name)
            await fire_observers(self._new_observers, session)
        for session in gone:
            logger.info("Session gone: %s (%s)", session.short_id, session.project_name)
            await fire_observers(self._gone_observers, session)
        return True

    def _prune(self, now: datetime) -> None:
        expired = [
            s.id for s in self._sessions.values()
            if not s.is_available
            and s.unavailable_since is not None
            and now - s.unavailable_since > self._grace
        ]
        for session_id in expired:
            del self._sessions[session_id]
            logger.debug("Pruned unavailable session %s", session_id[:8])

    def _recompute_default(self) -> None:
        if self._pinned_default and self._default_id:
            pinned = self._sessions.get(self._default_id)
            if pinned is not None and pinned.is_available:
                return
        self._pinned_default = False
        available = self.list_available()
        self._default_id = available[0].id if available else None

    async def handle_session_created(self, runtime: RuntimeSession) -> SessionInfo | None:
        """Register a session announced by the runtime event stream."""
        if runtime.parent_id:
            return None
        known = self._sessions.get(runtime.id)
        if known is not None and known.is_available:
            return known
        info = SessionInfo.from_runtime(runtime)
        self._sessions[runtime.id] = info
        self._recompute_default()
        logger.info("Session created: %s (%s)", info.short_id, info.project_name)
        await fire_observers(self._new_observers, info)
        return info

    async def handle_session_deleted(self, session_id: str) -> None:
        """Mark a session gone as announced by the runtime event stream."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_available:
            return
        self.mark_unavailable(session_id)
        await fire_observers(self._gone_observers, session)

    # ── Lookup ──────────────────────────────────────────────

    def get(self, query: str) -> SessionInfo | None:
        """Resolve an id, short id / id prefix, or project name fragment.

        Tiers are tried in order: exact id, then short id or id prefix
        (case-insensitive), then project name substring. Within a tier the
        most recently updated session wins.
        """
        query = (query or "").strip()
        if not query:
            return None
        exact = self._sessions.get(query)
        if exact is not None:
            return exact

        ordered = sorted(self._sessions.values(), key=lambda s: s.last_updated, reverse=True)
        lowered = query.lower()
        for session in ordered:
            if session.short_id.lower() == lowered or session.id.lower().startswith(lowered):
                return session
        for session in ordered:
            if lowered in session.project_name.lower():
                return session
        return None

    def set_default(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.is_available:
            return False
        self._default_id = session_id
        self._pinned_default = True
        logger.info("Default session set to %s", session.short_id)
        return True

    def get_default(self) -> SessionInfo | None:
        if self._default_id is None:
            return None
        return self._sessions.get(self._default_id)

    def mark_unavailable(self, session_id: str) -> None:
        """Flip availability now, without waiting for the next poll."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_available:
            return
        session.is_available = False
        session.unavailable_since = utcnow()
        logger.info("Session marked unavailable: %s", session.short_id)
        if self._default_id == session_id:
            self._recompute_default()

    def is_available(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.is_available

    def list(self) -> list[SessionInfo]:
        return sorted(self._sessions.values(), key=lambda s: s.last_updated, reverse=True)

    def list_available(self) -> list[SessionInfo]:
        return [s for s in self.list() if s.is_available]

    def available_ids(self) -> set[str]:
        return {s.id for s in self._sessions.values() if s.is_available}

    def count(self) -> int:
        return len(self._sessions)

    def count_available(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_available)

    def clear(self) -> None:
        self._sessions.clear()
        self._default_id = None
        self._pinned_default = False

    # ── Auto refresh ────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info("Session auto-refresh started (every %.0fs)", self._refresh_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._refresh_interval)
                await self.refresh()
            except asyncio.CancelledError:
                logger.info("Session auto-refresh stopped")
                return
            except Exception:
                logger.exception("Session auto-refresh error")
