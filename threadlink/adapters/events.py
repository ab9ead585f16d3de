"""Event types emitted by the agent runtime.

Each server-sent event from the runtime's ``/event`` stream is parsed
into a typed dataclass, so the bridge dispatches on type rather than
probing loose payload properties.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlparse

from threadlink.engine.models import RuntimeSession, TodoItem, TokenUsage

logger = logging.getLogger(__name__)

SHELL_TOOLS = frozenset({"bash", "shell"})
QUESTION_TOOLS = frozenset({"question", "ask_user"})


@dataclass
class RuntimeEvent:
    """Base event from the agent runtime."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class TextDelta(RuntimeEvent):
    event_type: str = "text_delta"
    message_id: str = ""
    part_id: str = ""
    delta: str = ""
    # Full part text so far, when the runtime sends it
    text: str | None = None


@dataclass
class ReasoningDelta(RuntimeEvent):
    event_type: str = "reasoning_delta"
    message_id: str = ""
    part_id: str = ""
    delta: str = ""
    text: str | None = None


@dataclass
class ToolStateChanged(RuntimeEvent):
    event_type: str = "tool_state_changed"
    message_id: str = ""
    call_id: str = ""
    tool: str = ""
    status: str = ""  # pending, running, completed, error
    title: str = ""
    output: str = ""
    error: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    attachments: list[str] = field(default_factory=list)

    @property
    def is_shell(self) -> bool:
        return self.tool in SHELL_TOOLS

    @property
    def is_question(self) -> bool:
        return self.tool in QUESTION_TOOLS

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "error")


@dataclass
class SessionIdle(RuntimeEvent):
    event_type: str = "session_idle"


@dataclass
class SessionCompacted(RuntimeEvent):
    event_type: str = "session_compacted"


@dataclass
class PermissionRequested(RuntimeEvent):
    event_type: str = "permission_requested"
    permission_id: str = ""
    permission_type: str = ""
    title: str = ""


@dataclass
class MessageCostUpdated(RuntimeEvent):
    event_type: str = "message_cost_updated"
    message_id: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class TodoUpdated(RuntimeEvent):
    event_type: str = "todo_updated"
    todos: list[TodoItem] = field(default_factory=list)


@dataclass
class SessionCreated(RuntimeEvent):
    event_type: str = "session_created"
    session: RuntimeSession | None = None


@dataclass
class SessionDeleted(RuntimeEvent):
    event_type: str = "session_deleted"


@dataclass
class SessionStatusChanged(RuntimeEvent):
    event_type: str = "session_status"
    status: str = ""  # busy, retry, idle
    attempt: int = 0
    max_attempts: int = 0
    message: str = ""
    next_retry_ms: float | None = None


@dataclass
class SessionError(RuntimeEvent):
    event_type: str = "session_error"
    error: str = ""
    error_name: str = ""


# ── Parsing ─────────────────────────────────────────────────


def _attachment_paths(state: dict[str, Any]) -> list[str]:
    paths: list[str] = []
    for item in state.get("attachments") or []:
        if not isinstance(item, dict):
            continue
        url = item.get("url") or ""
        if url.startswith("file://"):
            paths.append(unquote(urlparse(url).path))
        elif item.get("path"):
            paths.append(str(item["path"]))
    return paths


def _parse_part(props: dict[str, Any]) -> RuntimeEvent | None:
    part = props.get("part") or {}
    session_id = part.get("sessionID", "")
    message_id = part.get("messageID", "")
    part_type = part.get("type")
    if part_type in ("text", "reasoning", "thinking"):
        cls = TextDelta if part_type == "text" else ReasoningDelta
        return cls(
            session_id=session_id,
            message_id=message_id,
            part_id=part.get("id", ""),
            delta=props.get("delta") or "",
            text=part.get("text"),
        )
    if part_type == "tool":
        state = part.get("state") or {}
        metadata = state.get("metadata") or {}
        output = state.get("output")
        if output is None:
            output = metadata.get("output") or ""
        return ToolStateChanged(
            session_id=session_id,
            message_id=message_id,
            call_id=part.get("callID") or part.get("id", ""),
            tool=part.get("tool", ""),
            status=state.get("status", ""),
            title=state.get("title") or "",
            output=str(output),
            error=str(state.get("error") or ""),
            input=state.get("input") or {},
            attachments=_attachment_paths(state),
        )
    return None


def _parse_message_updated(props: dict[str, Any]) -> RuntimeEvent | None:
    info = props.get("info") or {}
    if info.get("role") != "assistant":
        return None
    return MessageCostUpdated(
        session_id=info.get("sessionID", ""),
        message_id=info.get("id", ""),
        usage=TokenUsage.from_api(info.get("tokens"), info.get("cost")),
    )


def _parse_status(props: dict[str, Any]) -> RuntimeEvent:
    status = props.get("status") or {}
    if isinstance(status, str):
        status = {"type": status}
    nxt = status.get("next")
    return SessionStatusChanged(
        session_id=props.get("sessionID", ""),
        status=status.get("type", ""),
        attempt=int(status.get("attempt") or 0),
        max_attempts=int(status.get("maxAttempts") or 0),
        message=str(status.get("message") or ""),
        next_retry_ms=float(nxt) if isinstance(nxt, (int, float)) else None,
    )


def _parse_error(props: dict[str, Any]) -> RuntimeEvent:
    error = props.get("error") or {}
    data = error.get("data") or {}
    return SessionError(
        session_id=props.get("sessionID", ""),
        error=str(data.get("message") or error.get("message") or error.get("name") or "Unknown error"),
        error_name=str(error.get("name") or ""),
    )


def _parse_permission(props: dict[str, Any]) -> RuntimeEvent:
    return PermissionRequested(
        session_id=props.get("sessionID", ""),
        permission_id=props.get("id", ""),
        permission_type=str(props.get("type") or props.get("permission") or ""),
        title=str(props.get("title") or ""),
    )


def _parse_session_info(cls: type[RuntimeEvent]) -> Callable[[dict[str, Any]], RuntimeEvent | None]:
    def parse(props: dict[str, Any]) -> RuntimeEvent | None:
        info = props.get("info") or {}
        if not info.get("id"):
            return None
        if cls is SessionCreated:
            return SessionCreated(session_id=info["id"], session=RuntimeSession.from_api(info))
        return cls(session_id=info["id"])
    return parse


_EVENT_MAP: dict[str, Callable[[dict[str, Any]], RuntimeEvent | None]] = {
    "message.part.updated": _parse_part,
    "message.updated": _parse_message_updated,
    "session.idle": lambda p: SessionIdle(session_id=p.get("sessionID", "")),
    "session.compacted": lambda p: SessionCompacted(session_id=p.get("sessionID", "")),
    "session.status": _parse_status,
    "session.error": _parse_error,
    "session.created": _parse_session_info(SessionCreated),
    "session.deleted": _parse_session_info(SessionDeleted),
    "permission.updated": _parse_permission,
    "permission.asked": _parse_permission,
    "todo.updated": lambda p: TodoUpdated(
        session_id=p.get("sessionID", ""),
        todos=[TodoItem.from_api(t) for t in p.get("todos") or [] if isinstance(t, dict)],
    ),
}


def dict_to_event(data: dict[str, Any]) -> RuntimeEvent | None:
    """Convert one runtime event payload to a typed event.

    Returns None for event types the bridge does not consume and for
    payloads too malformed to use.
    """
    event_type = data.get("type", "")
    parser = _EVENT_MAP.get(event_type)
    if parser is None:
        return None
    props = data.get("properties") or {}
    if not isinstance(props, dict):
        logger.debug("Ignoring %s event with non-object properties", event_type)
        return None
    try:
        return parser(props)
    except (TypeError, ValueError, KeyError) as exc:
        logger.warning("Malformed %s event ignored: %s", event_type, exc)
        return None
