from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from threadlink.adapters.chat_client import Channel, FileInfo, Post
from threadlink.engine.errors import AgentRuntimeError, ChatClientError
from threadlink.engine.models import (
    MappingStatus,
    RuntimeSession,
    ThreadSessionMapping,
    TokenUsage,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeChat:
    """In-memory stand-in for ChatClient that records every call."""

    def __init__(self) -> None:
        self.bot_user_id = "bot-user"
        self.bot_username = "threadlink"
        self._ids = itertools.count(1)
        self.posts: dict[str, Post] = {}
        self.created: list[Post] = []
        self.updates: list[tuple[str, str]] = []
        self.create_failures = 0
        self.update_gate: asyncio.Event | None = None
        self.files: dict[str, tuple[FileInfo, bytes]] = {}
        self.uploaded: list[Path] = []

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def create_post(self, channel_id, message, root_id=None, file_ids=None) -> Post:
        if self.create_failures:
            self.create_failures -= 1
            raise ChatClientError("create_post", "boom", 500)
        post = Post(
            id=f"post-{next(self._ids)}",
            channel_id=channel_id,
            message=message,
            root_id=root_id or "",
            file_ids=list(file_ids or []),
        )
        self.posts[post.id] = post
        self.created.append(post)
        return post

    async def update_post(self, post_id, message) -> Post:
        if self.update_gate is not None:
            await self.update_gate.wait()
        self.updates.append((post_id, message))
        post = self.posts[post_id]
        post.message = message
        return post

    async def create_direct_channel(self, user_id) -> Channel:
        return Channel(id=f"dm-{user_id}", type="D")

    async def get_user(self, user_id):
        return {"id": user_id, "username": f"user-{user_id}"}

    async def get_file_info(self, file_id) -> FileInfo:
        return self.files[file_id][0]

    async def download_file(self, file_id) -> bytes:
        return self.files[file_id][1]

    async def upload_file(self, channel_id, path) -> str:
        self.uploaded.append(Path(path))
        return f"file-{len(self.uploaded)}"

    def replies_in(self, root_id: str) -> list[str]:
        return [p.message for p in self.created if p.root_id == root_id]

    def updates_for(self, post_id: str) -> list[str]:
        return [m for pid, m in self.updates if pid == post_id]


class FakeAgent:
    """In-memory stand-in for AgentClient."""

    def __init__(self, sessions: list[RuntimeSession] | None = None) -> None:
        self.sessions = list(sessions or [])
        self.dispatched: list[tuple[str, list, object]] = []
        self.fail_dispatch: AgentRuntimeError | None = None
        self.fail_list = False
        self.prior = TokenUsage()
        self.created_sessions: list[RuntimeSession] = []
        self.events_connected = False

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def start_events(self, handler) -> None:
        self.events_connected = True

    async def stop_events(self) -> None:
        self.events_connected = False

    async def list_sessions(self) -> list[RuntimeSession]:
        if self.fail_list:
            raise AgentRuntimeError("list_sessions", "connection refused")
        return list(self.sessions)

    async def create_session(self, directory=None, title=None) -> RuntimeSession:
        session = RuntimeSession(
            id=f"ses_new{len(self.created_sessions) + 1}",
            directory=directory or "/work/app",
            title=title or "",
        )
        self.created_sessions.append(session)
        self.sessions.append(session)
        return session

    async def dispatch_prompt(self, session_id, parts, model=None) -> None:
        if self.fail_dispatch is not None:
            raise self.fail_dispatch
        self.dispatched.append((session_id, parts, model))

    async def prior_usage(self, session_id) -> TokenUsage:
        return self.prior


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_mapping(
    session_id: str = "ses_1",
    root: str = "root-1",
    status: MappingStatus = MappingStatus.ACTIVE,
    owner: str = "user-1",
    activity: datetime = T0,
    **overrides,
) -> ThreadSessionMapping:
    fields = dict(
        session_id=session_id,
        thread_root_post_id=root,
        short_id=session_id[:8],
        owner_user_id=owner,
        dm_channel_id="dm-1",
        project_name="app",
        working_directory="/work/app",
        status=status,
        created_at=T0,
        last_activity_at=activity,
        ended_at=activity if status == MappingStatus.ENDED else None,
    )
    fields.update(overrides)
    return ThreadSessionMapping(**fields)


def runtime_session(session_id: str, directory: str = "/work/app", minutes_ago: int = 0, **kw) -> RuntimeSession:
    return RuntimeSession(
        id=session_id,
        directory=directory,
        updated_at=T0 - timedelta(minutes=minutes_ago),
        **kw,
    )


async def drain(rounds: int = 10) -> None:
    """Let scheduled tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
