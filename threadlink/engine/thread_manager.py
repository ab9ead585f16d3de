"""Thread lifecycle: create, end, disconnect, reconnect and orphan.

Every status change is validated against the lifecycle table and, where
the user would otherwise not notice, announced with a post in the thread.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from threadlink.shared.formatting import format_duration, utcnow

from .errors import ChatClientError, ThreadCreationError
from .lifecycle import TERMINAL_STATUSES
from .mapping_store import MappingStore
from .models import MappingStatus, ModelSelection, SessionInfo, ThreadSessionMapping

if TYPE_CHECKING:
    from threadlink.adapters.chat_client import ChatClient

logger = logging.getLogger(__name__)


def format_thread_root_post(session: SessionInfo, started_at: datetime) -> str:
    lines = [
        ":rocket: **Agent Session Started**",
        "",
        f"**Project**: {session.project_name}",
        f"**Directory**: {session.directory}",
        f"**Session**: {session.short_id} (`{session.id}`)",
        f"**Started**: {started_at.isoformat(timespec='seconds')}",
    ]
    if session.title and session.title != session.project_name:
        lines.insert(2, f"**Title**: {session.title}")
    lines += ["", "_Reply in this thread to send prompts to this session._"]
    return "\n".join(lines)


def format_thread_ended_post(duration: str, ended_at: datetime) -> str:
    return "\n".join([
        ":checkered_flag: **Session Ended**",
        "",
        f"**Duration**: {duration}",
        f"**Ended**: {ended_at.isoformat(timespec='seconds')}",
        "",
        "_This thread is now read-only. Start a new session for a new thread._",
    ])


RECONNECTED_NOTICE = ":arrows_counterclockwise: **Session reconnected**"
ORPHANED_NOTICE = (
    ":ghost: **Session no longer available**\n\n"
    "_The agent session behind this thread is gone. Start a new session for a new thread._"
)
DISCONNECTED_NOTICE = (
    ":electric_plug: **Bridge disconnected**\n\n"
    "_Replies here will be accepted again once the bridge reconnects._"
)


class ThreadManager:
    """Drives mapping status transitions and the chat posts that announce them."""

    def __init__(self, chat: ChatClient, store: MappingStore) -> None:
        self._chat = chat
        self._store = store
        self._pending: dict[str, asyncio.Future[ThreadSessionMapping]] = {}

    async def create_thread(
        self,
        session: SessionInfo,
        owner_user_id: str,
        dm_channel_id: str,
    ) -> ThreadSessionMapping:
        """Return the session's mapping, creating the thread if needed.

        Concurrent calls for one session share a single creation, so only
        one root post is ever made. Raises ThreadCreationError when the
        root post fails twice.
        """
        existing = self._store.get_by_session_id(session.id)
        if existing is not None:
            logger.debug("Thread already exists for session %s", session.short_id)
            return existing

        pending = self._pending.get(session.id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[ThreadSessionMapping] = asyncio.get_running_loop().create_future()
        self._pending[session.id] = future
        try:
            mapping = await self._create(session, owner_user_id, dm_channel_id)
        except BaseException as exc:
            if not future.done():
                future.set_exception(exc)
                # mark retrieved so an unawaited waiter doesn't log a warning
                future.exception()
            raise
        else:
            future.set_result(mapping)
            return mapping
        finally:
            self._pending.pop(session.id, None)

    async def _create(
        self,
        session: SessionInfo,
        owner_user_id: str,
        dm_channel_id: str,
    ) -> ThreadSessionMapping:
        started_at = utcnow()
        message = format_thread_root_post(session, started_at)
        try:
            root = await self._chat.create_post(dm_channel_id, message)
        except ChatClientError as first:
            logger.warning(
                "Root post for session %s failed, retrying once: %s", session.short_id, first,
            )
            try:
                root = await self._chat.create_post(dm_channel_id, message)
            except ChatClientError as second:
                raise ThreadCreationError(session.id, str(second)) from second

        mapping = ThreadSessionMapping(
            session_id=session.id,
            thread_root_post_id=root.id,
            short_id=session.short_id,
            owner_user_id=owner_user_id,
            dm_channel_id=dm_channel_id,
            project_name=session.project_name,
            working_directory=session.directory,
            session_title=session.title or None,
            status=MappingStatus.ACTIVE,
            created_at=started_at,
            last_activity_at=started_at,
        )
        self._store.add(mapping)
        logger.info(
            "Created thread %s for session %s (%s)",
            root.id[:8], session.short_id, session.project_name,
        )
        return mapping

    async def end_thread(self, session_id: str) -> ThreadSessionMapping | None:
        """Post a closing reply and mark the mapping ended.

        No-op for unknown, ended or orphaned mappings. A failed closing
        post is logged; the status still changes.
        """
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None:
            logger.debug("end_thread: no mapping for session %s", session_id[:8])
            return None
        if mapping.status in TERMINAL_STATUSES:
            return mapping

        now = utcnow()
        message = format_thread_ended_post(format_duration(mapping.created_at, now), now)
        await self._post_notice(mapping, message)
        ended = self._store.transition(session_id, MappingStatus.ENDED, now)
        logger.info("Ended thread for session %s", mapping.short_id)
        return ended

    def mark_disconnected(self, session_id: str) -> bool:
        """ACTIVE -> DISCONNECTED. Returns False (no-op) from any other status."""
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None or mapping.status != MappingStatus.ACTIVE:
            return False
        self._store.transition(session_id, MappingStatus.DISCONNECTED)
        logger.info("Marked session %s as disconnected", mapping.short_id)
        return True

    async def reconnect_thread(
        self,
        session_id: str,
        session_available: bool = True,
    ) -> ThreadSessionMapping | None:
        """Leave DISCONNECTED: back to ACTIVE, or ORPHANED when the session is gone.

        Mappings in any other status are returned unchanged.
        """
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None:
            return None
        if mapping.status != MappingStatus.DISCONNECTED:
            return mapping

        if session_available:
            updated = self._store.transition(session_id, MappingStatus.ACTIVE)
            await self._post_notice(updated, RECONNECTED_NOTICE)
            logger.info("Reconnected thread for session %s", mapping.short_id)
        else:
            updated = self._store.transition(session_id, MappingStatus.ORPHANED)
            await self._post_notice(updated, ORPHANED_NOTICE)
            logger.info("Session %s gone during disconnect, thread orphaned", mapping.short_id)
        return updated

    async def mark_orphaned(self, session_id: str) -> bool:
        """ACTIVE/DISCONNECTED -> ORPHANED with a notice in the thread."""
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None or mapping.status in TERMINAL_STATUSES:
            return False
        updated = self._store.transition(session_id, MappingStatus.ORPHANED)
        await self._post_notice(updated, ORPHANED_NOTICE)
        logger.info("Thread for session %s orphaned", mapping.short_id)
        return True

    def update_activity(self, session_id: str) -> None:
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None:
            return
        updated = replace(mapping)
        updated.touch()
        self._store.update(updated)

    def set_selected_model(
        self,
        session_id: str,
        selection: ModelSelection | None,
    ) -> ThreadSessionMapping | None:
        mapping = self._store.get_by_session_id(session_id)
        if mapping is None:
            return None
        updated = replace(mapping, selected_model=selection)
        updated.touch()
        self._store.update(updated)
        logger.info(
            "Session %s model set to %s", mapping.short_id, selection or "(runtime default)",
        )
        return updated

    def get_mapping(self, session_id: str) -> ThreadSessionMapping | None:
        return self._store.get_by_session_id(session_id)

    def get_mapping_by_thread_id(self, thread_root_post_id: str) -> ThreadSessionMapping | None:
        return self._store.get_by_thread_root_post_id(thread_root_post_id)

    async def disconnect_all(self, announce: bool = False) -> int:
        """Mark every active mapping disconnected (process unload)."""
        count = 0
        for mapping in self._store.list_active():
            if self.mark_disconnected(mapping.session_id):
                count += 1
                if announce:
                    await self._post_notice(mapping, DISCONNECTED_NOTICE)
        if count:
            logger.info("Disconnected %d thread(s)", count)
        return count

    async def reconcile(self, available_ids: Iterable[str]) -> dict[str, int]:
        """Startup pass: reconnect or orphan every disconnected mapping."""
        available = set(available_ids)
        result = {"reconnected": 0, "orphaned": 0}
        for mapping in self._store.list_all():
            if mapping.status != MappingStatus.DISCONNECTED:
                continue
            alive = mapping.session_id in available
            await self.reconnect_thread(mapping.session_id, session_available=alive)
            result["reconnected" if alive else "orphaned"] += 1
        if any(result.values()):
            logger.info(
                "Reconcile: %d reconnected, %d orphaned",
                result["reconnected"], result["orphaned"],
            )
        return result

    async def _post_notice(self, mapping: ThreadSessionMapping, message: str) -> None:
        try:
            await self._chat.create_post(
                mapping.dm_channel_id, message, root_id=mapping.thread_root_post_id,
            )
        except ChatClientError as exc:
            logger.warning(
                "Failed to post notice in thread of session %s: %s", mapping.short_id, exc,
            )
