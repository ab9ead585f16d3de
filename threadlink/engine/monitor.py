"""One-shot attention alerts for watched sessions.

A user registers a session; the next permission request, question or
idle event for it (while it has no live chat context) is sent to the
user as a direct message, and the registration is dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from threadlink.shared.formatting import utcnow

from .errors import ChatClientError
from .models import SessionInfo

if TYPE_CHECKING:
    from threadlink.adapters.chat_client import ChatClient

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    PERMISSION = "permission"
    IDLE = "idle"
    QUESTION = "question"


_ALERT_TEXT = {
    AlertType.PERMISSION: (":lock:", "Permission requested"),
    AlertType.IDLE: (":hourglass:", "Session is idle (waiting for input)"),
    AlertType.QUESTION: (":question:", "Question awaiting answer"),
}


@dataclass
class MonitoredSession:
    session_id: str
    short_id: str
    user_id: str
    project_name: str
    directory: str
    registered_at: datetime = field(default_factory=utcnow)


def format_alert_message(
    alert: AlertType,
    session: MonitoredSession,
    details: str = "",
    command_prefix: str = "!",
) -> str:
    icon, text = _ALERT_TEXT[alert]
    lines = [
        ":bell: **Agent Session Alert**",
        "",
        f"**Project:** {session.project_name}",
        f"**Session:** `{session.short_id}`",
        f"**Directory:** `{session.directory}`",
        "",
        f"{icon} **Alert:** {text}",
    ]
    if details:
        lines.append(f"**Details:** {details}")
    lines += ["", f"_Use `{command_prefix}use {session.short_id}` in DM to connect to this session._"]
    return "\n".join(lines)


class Monitor:
    """Registry of sessions a user wants a single heads-up about."""

    def __init__(self, chat: ChatClient, command_prefix: str = "!") -> None:
        self._chat = chat
        self._prefix = command_prefix
        self._watched: dict[str, MonitoredSession] = {}

    def register(self, session: SessionInfo, user_id: str) -> MonitoredSession:
        entry = MonitoredSession(
            session_id=session.id,
            short_id=session.short_id,
            user_id=user_id,
            project_name=session.project_name,
            directory=session.directory,
        )
        self._watched[session.id] = entry
        logger.info("Monitoring session %s for user %s", session.short_id, user_id[:8])
        return entry

    def unregister(self, session_id: str) -> bool:
        return self._watched.pop(session_id, None) is not None

    def is_monitored(self, session_id: str) -> bool:
        return session_id in self._watched

    def list(self) -> list[MonitoredSession]:
        return list(self._watched.values())

    def clear(self) -> None:
        self._watched.clear()

    async def alert(self, session_id: str, alert: AlertType, details: str = "") -> bool:
        """Send the alert if *session_id* is watched. Returns True if sent."""
        entry = self._watched.pop(session_id, None)
        if entry is None:
            return False
        message = format_alert_message(alert, entry, details, self._prefix)
        try:
            channel = await self._chat.create_direct_channel(entry.user_id)
            await self._chat.create_post(channel.id, message)
        except ChatClientError as exc:
            logger.error("Failed to send %s alert for session %s: %s", alert.value, entry.short_id, exc)
            return False
        logger.info("Sent %s alert for session %s", alert.value, entry.short_id)
        return True
