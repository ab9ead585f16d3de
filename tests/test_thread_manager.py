from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import pytest

from conftest import FakeChat, make_mapping
from threadlink.engine.errors import ThreadCreationError
from threadlink.engine.mapping_store import MappingStore
from threadlink.engine.models import MappingStatus, ModelSelection, SessionInfo
from threadlink.engine.thread_manager import (
    ORPHANED_NOTICE,
    RECONNECTED_NOTICE,
    ThreadManager,
    format_thread_root_post,
)
from threadlink.shared.formatting import utcnow


def _session(session_id: str = "ses_alpha1234") -> SessionInfo:
    return SessionInfo(
        id=session_id,
        short_id=session_id[:8],
        project_name="api",
        directory="/work/api",
        title="Fix login",
        last_updated=utcnow(),
    )


class SlowChat(FakeChat):
    async def create_post(self, channel_id, message, root_id=None, file_ids=None):
        await asyncio.sleep(0.01)
        return await super().create_post(channel_id, message, root_id, file_ids)


@pytest.mark.asyncio
async def test_create_thread_posts_root_and_stores_mapping(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        manager = ThreadManager(chat, store)

        mapping = await manager.create_thread(_session(), "user-1", "dm-1")
        assert mapping.status == MappingStatus.ACTIVE
        assert mapping.thread_root_post_id == chat.created[0].id
        assert "Agent Session Started" in chat.created[0].message
        assert "Fix login" in chat.created[0].message
        assert store.get_by_thread_root_post_id(mapping.thread_root_post_id) is mapping


@pytest.mark.asyncio
async def test_concurrent_create_makes_one_root_post():
    chat = SlowChat()
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        manager = ThreadManager(chat, store)

        results = await asyncio.gather(*[
            manager.create_thread(_session(), "user-1", "dm-1") for _ in range(5)
        ])
        assert len(chat.created) == 1
        assert len({r.thread_root_post_id for r in results}) == 1
        assert store.count() == 1

        again = await manager.create_thread(_session(), "user-1", "dm-1")
        assert again.thread_root_post_id == results[0].thread_root_post_id
        assert len(chat.created) == 1


@pytest.mark.asyncio
async def test_create_retries_once_then_raises(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        manager = ThreadManager(chat, store)

        chat.create_failures = 1
        mapping = await manager.create_thread(_session("ses_retry001"), "user-1", "dm-1")
        assert mapping is not None

        chat.create_failures = 2
        with pytest.raises(ThreadCreationError):
            await manager.create_thread(_session("ses_fail0001"), "user-1", "dm-1")
        assert store.get_by_session_id("ses_fail0001") is None


@pytest.mark.asyncio
async def test_end_thread_posts_summary_and_is_idempotent(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        store.add(make_mapping("ses_a", "root-a"))
        manager = ThreadManager(chat, store)

        ended = await manager.end_thread("ses_a")
        assert ended.status == MappingStatus.ENDED
        assert ended.ended_at is not None
        assert "Session Ended" in chat.replies_in("root-a")[0]

        await manager.end_thread("ses_a")
        assert len(chat.replies_in("root-a")) == 1
        assert await manager.end_thread("ses_unknown") is None


@pytest.mark.asyncio
async def test_end_thread_still_ends_when_notice_fails(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        store.add(make_mapping("ses_a", "root-a"))
        manager = ThreadManager(chat, store)
        chat.create_failures = 1

        ended = await manager.end_thread("ses_a")
        assert ended.status == MappingStatus.ENDED


@pytest.mark.asyncio
async def test_disconnect_and_reconnect(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        store.add(make_mapping("ses_a", "root-a"))
        store.add(make_mapping("ses_b", "root-b"))
        store.add(make_mapping("ses_c", "root-c", status=MappingStatus.ENDED))
        manager = ThreadManager(chat, store)

        assert await manager.disconnect_all() == 2
        assert manager.mark_disconnected("ses_c") is False

        result = await manager.reconcile({"ses_a"})
        assert result == {"reconnected": 1, "orphaned": 1}
        assert store.get_by_session_id("ses_a").status == MappingStatus.ACTIVE
        assert store.get_by_session_id("ses_b").status == MappingStatus.ORPHANED
        assert chat.replies_in("root-a") == [RECONNECTED_NOTICE]
        assert chat.replies_in("root-b") == [ORPHANED_NOTICE]


@pytest.mark.asyncio
async def test_reconnect_ignores_non_disconnected(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        store.add(make_mapping("ses_a", "root-a"))
        manager = ThreadManager(chat, store)

        mapping = await manager.reconnect_thread("ses_a")
        assert mapping.status == MappingStatus.ACTIVE
        assert chat.created == []


@pytest.mark.asyncio
async def test_mark_orphaned_only_from_open_states(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        store.add(make_mapping("ses_a", "root-a"))
        store.add(make_mapping("ses_e", "root-e", status=MappingStatus.ENDED))
        manager = ThreadManager(chat, store)

        assert await manager.mark_orphaned("ses_a")
        assert await manager.mark_orphaned("ses_a") is False
        assert await manager.mark_orphaned("ses_e") is False
        assert store.get_by_session_id("ses_e").status == MappingStatus.ENDED


@pytest.mark.asyncio
async def test_selected_model_and_activity(chat):
    with tempfile.TemporaryDirectory() as tmp:
        store = MappingStore(path=Path(tmp) / "threads.json")
        original = make_mapping("ses_a", "root-a")
        store.add(original)
        manager = ThreadManager(chat, store)

        updated = manager.set_selected_model("ses_a", ModelSelection.parse("anthropic/claude-sonnet"))
        assert str(updated.selected_model) == "anthropic/claude-sonnet"
        assert manager.get_mapping("ses_a").selected_model.model_id == "claude-sonnet"

        manager.update_activity("ses_a")
        assert manager.get_mapping("ses_a").last_activity_at > original.last_activity_at
        assert manager.get_mapping_by_thread_id("root-a").session_id == "ses_a"


def test_root_post_mentions_project_and_session():
    text = format_thread_root_post(_session(), utcnow())
    assert "**Project**: api" in text
    assert "`ses_alpha1234`" in text
    assert "Reply in this thread" in text
