"""Core data models for the bridge engine.

All dataclasses and enums shared across the engine. Single source of
truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from threadlink.shared.formatting import project_name_from_directory


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or epoch millis) into an aware UTC datetime.

    Raises ValueError for anything unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class MappingStatus(str, Enum):
    """Thread mapping states. See lifecycle.py for transition rules."""
    ACTIVE = "active"
    ENDED = "ended"
    DISCONNECTED = "disconnected"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class ModelSelection:
    """Provider/model pair chosen for a session's prompts."""
    provider_id: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"

    @classmethod
    def parse(cls, value: str) -> ModelSelection:
        provider, sep, model = value.strip().partition("/")
        if not sep or not provider or not model:
            raise ValueError(f"expected provider/model, got {value!r}")
        return cls(provider_id=provider, model_id=model)


_REQUIRED_MAPPING_FIELDS = (
    "session_id",
    "thread_root_post_id",
    "short_id",
    "owner_user_id",
    "dm_channel_id",
    "project_name",
    "working_directory",
)


@dataclass
class ThreadSessionMapping:
    """Durable association between one agent session and one chat thread."""

    session_id: str
    thread_root_post_id: str
    short_id: str
    owner_user_id: str
    dm_channel_id: str
    project_name: str
    working_directory: str
    session_title: str | None = None
    status: MappingStatus = MappingStatus.ACTIVE
    created_at: datetime = field(default_factory=_utc_now)
    last_activity_at: datetime = field(default_factory=_utc_now)
    ended_at: datetime | None = None
    selected_model: ModelSelection | None = None

    def touch(self, now: datetime | None = None) -> None:
        """Bump last activity, never earlier than creation."""
        now = now or _utc_now()
        self.last_activity_at = max(now, self.created_at)

    @property
    def is_open(self) -> bool:
        return self.status == MappingStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "session_id": self.session_id,
            "thread_root_post_id": self.thread_root_post_id,
            "short_id": self.short_id,
            "owner_user_id": self.owner_user_id,
            "dm_channel_id": self.dm_channel_id,
            "project_name": self.project_name,
            "working_directory": self.working_directory,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }
        if self.session_title:
            d["session_title"] = self.session_title
        if self.ended_at is not None:
            d["ended_at"] = self.ended_at.isoformat()
        if self.selected_model is not None:
            d["selected_model"] = {
                "provider_id": self.selected_model.provider_id,
                "model_id": self.selected_model.model_id,
            }
        return d

    @classmethod
    def from_dict(cls, data: Any) -> ThreadSessionMapping:
        """Build a mapping from persisted data.

        Raises ValueError when a required field is missing or malformed.
        Recoverable inconsistencies (ended without ``ended_at``, activity
        before creation) are normalized rather than rejected.
        """
        if not isinstance(data, dict):
            raise ValueError("mapping entry is not an object")
        for name in _REQUIRED_MAPPING_FIELDS:
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"missing or empty field {name!r}")
        try:
            status = MappingStatus(data.get("status"))
        except ValueError:
            raise ValueError(f"unknown status {data.get('status')!r}") from None
        created_at = parse_timestamp(data.get("created_at"))
        last_activity_at = max(parse_timestamp(data.get("last_activity_at")), created_at)

        ended_at = None
        if status == MappingStatus.ENDED:
            raw_ended = data.get("ended_at")
            ended_at = parse_timestamp(raw_ended) if raw_ended else last_activity_at

        selected_model = None
        raw_model = data.get("selected_model")
        if isinstance(raw_model, dict) and raw_model.get("provider_id") and raw_model.get("model_id"):
            selected_model = ModelSelection(
                provider_id=str(raw_model["provider_id"]),
                model_id=str(raw_model["model_id"]),
            )

        title = data.get("session_title")
        return cls(
            session_id=data["session_id"],
            thread_root_post_id=data["thread_root_post_id"],
            short_id=data["short_id"],
            owner_user_id=data["owner_user_id"],
            dm_channel_id=data["dm_channel_id"],
            project_name=data["project_name"],
            working_directory=data["working_directory"],
            session_title=title if isinstance(title, str) and title else None,
            status=status,
            created_at=created_at,
            last_activity_at=last_activity_at,
            ended_at=ended_at,
            selected_model=selected_model,
        )


@dataclass
class RuntimeSession:
    """A session as reported by the agent runtime's session listing."""
    id: str
    directory: str
    title: str = ""
    updated_at: datetime = field(default_factory=_utc_now)
    parent_id: str | None = None
    slug: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RuntimeSession:
        times = data.get("time") or {}
        updated = times.get("updated") or times.get("created")
        try:
            updated_at = parse_timestamp(updated) if updated is not None else _utc_now()
        except ValueError:
            updated_at = _utc_now()
        return cls(
            id=str(data["id"]),
            directory=str(data.get("directory") or ""),
            title=str(data.get("title") or ""),
            updated_at=updated_at,
            parent_id=data.get("parentID") or data.get("parent_id") or None,
            slug=data.get("slug") or None,
        )


@dataclass
class SessionInfo:
    """A live agent session as tracked by the session registry."""
    id: str
    short_id: str
    project_name: str
    directory: str
    title: str
    last_updated: datetime
    is_available: bool = True
    unavailable_since: datetime | None = None

    @classmethod
    def from_runtime(cls, session: RuntimeSession) -> SessionInfo:
        project = project_name_from_directory(session.directory)
        return cls(
            id=session.id,
            short_id=session.slug or session.id[:8],
            project_name=project,
            directory=session.directory,
            title=session.title or project,
            last_updated=session.updated_at,
        )


@dataclass
class InboundMessage:
    """A chat message received from the platform's message stream."""
    post_id: str
    channel_id: str
    sender_id: str
    text: str
    thread_anchor_id: str = ""
    attachment_ids: list[str] = field(default_factory=list)
    channel_type: str = ""

    @property
    def is_threaded(self) -> bool:
        return bool(self.thread_anchor_id)


@dataclass
class TodoItem:
    id: str
    content: str
    status: str = "pending"
    priority: str = "medium"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> TodoItem:
        return cls(
            id=str(data.get("id", "")),
            content=str(data.get("content", "")),
            status=str(data.get("status", "pending")),
            priority=str(data.get("priority", "medium")),
        )


# ── Response aggregation ────────────────────────────────────


class PromptPhase(str, Enum):
    """Visible state of one in-flight prompt."""
    QUEUED = "queued"
    CONNECTING = "connecting"
    PROCESSING = "processing"
    TOOL_RUNNING = "tool_running"
    WAITING = "waiting"
    RETRYING = "retrying"
    ERROR = "error"
    COMPLETE = "complete"


TERMINAL_PHASES = frozenset({PromptPhase.ERROR, PromptPhase.COMPLETE})


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            reasoning=self.reasoning + other.reasoning,
            cache_read=self.cache_read + other.cache_read,
            cache_write=self.cache_write + other.cache_write,
            cost=self.cost + other.cost,
        )

    @classmethod
    def from_api(cls, tokens: dict[str, Any] | None, cost: Any = 0.0) -> TokenUsage:
        tokens = tokens or {}
        cache = tokens.get("cache") or {}
        return cls(
            input=int(tokens.get("input") or 0),
            output=int(tokens.get("output") or 0),
            reasoning=int(tokens.get("reasoning") or 0),
            cache_read=int(cache.get("read") or 0),
            cache_write=int(cache.get("write") or 0),
            cost=float(cost or 0.0),
        )


@dataclass
class ToolCall:
    """A finished tool invocation, kept in call order."""
    call_id: str
    name: str
    started_at: float
    ended_at: float
    failed: bool = False


@dataclass
class ActiveTool:
    """The single tool currently running for a session."""
    call_id: str
    name: str
    started_at: float
    title: str = ""
    is_shell: bool = False
    last_output_at: float | None = None


@dataclass
class ResponseContext:
    """In-memory aggregation state for one session's in-flight prompt.

    Timing fields use ``time.monotonic()`` seconds.
    """
    session_id: str
    short_id: str
    channel_id: str
    thread_root_post_id: str
    started_at: float
    phase: PromptPhase = PromptPhase.QUEUED
    phase_detail: str = ""
    recoverable: bool = True
    retry_attempt: int = 0
    retry_max_attempts: int = 0
    next_retry_at: float | None = None
    # part id -> text, in arrival order
    text_parts: dict[str, str] = field(default_factory=dict)
    reasoning_parts: dict[str, str] = field(default_factory=dict)
    tool_calls: list[ToolCall] = field(default_factory=list)
    active_tool: ActiveTool | None = None
    shell_lines: list[str] = field(default_factory=list)
    shell_hidden_lines: int = 0
    compactions: int = 0
    todos: list[TodoItem] = field(default_factory=list)
    cost_seed: TokenUsage = field(default_factory=TokenUsage)
    # message id -> latest usage reported for it during this turn
    message_usage: dict[str, TokenUsage] = field(default_factory=dict)
    current_message_id: str | None = None
    finished_at: float | None = None
    # Runtime handles, owned by the aggregator
    stream: Any = None
    ticker: Any = None
    flush_handle: Any = None
    render_task: Any = None
    dirty: bool = False
    last_render_at: float = 0.0
    # Text characters received since the last render
    pending_chars: int = 0

    @property
    def response_text(self) -> str:
        return "\n\n".join(t for t in self.text_parts.values() if t.strip())

    @property
    def reasoning_text(self) -> str:
        return "\n\n".join(t for t in self.reasoning_parts.values() if t.strip())

    @property
    def current_usage(self) -> TokenUsage:
        if self.current_message_id is None:
            return TokenUsage()
        return self.message_usage.get(self.current_message_id, TokenUsage())

    @property
    def session_total(self) -> TokenUsage:
        total = self.cost_seed
        for usage in self.message_usage.values():
            total = total + usage
        return total

    def tool_tally(self) -> dict[str, int]:
        tally: dict[str, int] = {}
        for call in self.tool_calls:
            tally[call.name] = tally.get(call.name, 0) + 1
        return tally
