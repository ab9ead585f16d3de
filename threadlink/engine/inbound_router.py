"""Classify inbound chat messages into routing outcomes.

Precedence:
    1. A thread reply is resolved by its thread anchor alone:
       unknown anchor      -> UnknownThreadRoute
       ended/disconnected/orphaned -> EndedSessionRoute
       otherwise           -> ThreadPromptRoute (text forwarded as-is,
                              even when it looks like a command)
    2. A top-level message is a MainCommandRoute when it is the prefix
       plus a known command word, else a MainPromptRoute.

Top-level prompts are never forwarded to a "current" session implicitly.
Routing errors are outcomes, not exceptions.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Union

from .mapping_store import MappingStore
from .models import InboundMessage, MappingStatus

logger = logging.getLogger(__name__)

KNOWN_COMMANDS = ("sessions", "use", "current", "help")


@dataclass
class ParsedCommand:
    name: str
    args: list[str] = field(default_factory=list)
    raw_args: str = ""


def parse_command(
    text: str,
    prefix: str = "!",
    known: tuple[str, ...] = KNOWN_COMMANDS,
) -> ParsedCommand | None:
    """Parse ``<prefix><word> [args...]`` when *word* is a known command.

    Returns None for anything else, including unknown words after the
    prefix, so those fall through to prompt handling.
    """
    message = text.strip()
    if not prefix or not message.startswith(prefix):
        return None
    body = message[len(prefix):]
    match = re.match(r"([a-z]+)(?:\s+(.*))?$", body, re.DOTALL)
    if match is None or match.group(1) not in known:
        return None
    raw_args = (match.group(2) or "").strip()
    return ParsedCommand(name=match.group(1), args=raw_args.split(), raw_args=raw_args)


@dataclass
class ThreadPromptRoute:
    session_id: str
    thread_root_post_id: str
    prompt_text: str
    attachment_ids: list[str] = field(default_factory=list)


@dataclass
class MainCommandRoute:
    command: ParsedCommand


@dataclass
class MainPromptRoute:
    prompt_text: str
    auto_create: bool
    error_message: str = ""
    suggested_action: str = ""
    attachment_ids: list[str] = field(default_factory=list)


@dataclass
class UnknownThreadRoute:
    thread_root_post_id: str
    error_message: str
    suggested_action: str


@dataclass
class EndedSessionRoute:
    session_id: str
    thread_root_post_id: str
    status: MappingStatus
    error_message: str
    suggested_action: str


RouteResult = Union[
    ThreadPromptRoute,
    MainCommandRoute,
    MainPromptRoute,
    UnknownThreadRoute,
    EndedSessionRoute,
]

_ENDED_MESSAGES = {
    MappingStatus.ENDED: (
        ":checkered_flag: This session has ended.",
        "Start a new session, or send a message in the main conversation to create one.",
    ),
    MappingStatus.DISCONNECTED: (
        ":electric_plug: This session is disconnected from the bridge.",
        "Wait for the bridge to reconnect, then reply here again.",
    ),
    MappingStatus.ORPHANED: (
        ":ghost: This session is no longer available; the agent runtime no longer reports it.",
        "Start a new session, or send a message in the main conversation to create one.",
    ),
}


class InboundRouter:
    """Decide where each inbound chat message goes."""

    def __init__(
        self,
        store: MappingStore,
        command_prefix: str = "!",
        auto_create_sessions: bool = False,
    ) -> None:
        self._store = store
        self.command_prefix = command_prefix
        self.auto_create_sessions = auto_create_sessions

    def route(self, message: InboundMessage) -> RouteResult:
        if message.is_threaded:
            return self._route_thread_reply(message)

        command = parse_command(message.text, self.command_prefix)
        if command is not None:
            return MainCommandRoute(command=command)

        text = message.text.strip()
        if self.auto_create_sessions:
            return MainPromptRoute(
                prompt_text=text,
                auto_create=True,
                attachment_ids=list(message.attachment_ids),
            )
        return MainPromptRoute(
            prompt_text=text,
            auto_create=False,
            error_message=(
                ":speech_balloon: Prompts go inside a session thread, "
                "not the main conversation."
            ),
            suggested_action=(
                f"Reply in a session's thread, or use `{self.command_prefix}sessions` "
                "to find one."
            ),
            attachment_ids=list(message.attachment_ids),
        )

    def _route_thread_reply(self, message: InboundMessage) -> RouteResult:
        anchor = message.thread_anchor_id
        mapping = self._store.get_by_thread_root_post_id(anchor)
        if mapping is None:
            logger.debug("Reply in unmapped thread %s", anchor[:8])
            return UnknownThreadRoute(
                thread_root_post_id=anchor,
                error_message=":grey_question: This thread is not associated with any agent session.",
                suggested_action=(
                    f"Use `{self.command_prefix}sessions` in the main conversation "
                    "to find a session thread."
                ),
            )

        if mapping.status != MappingStatus.ACTIVE:
            error_message, suggested_action = _ENDED_MESSAGES[mapping.status]
            return EndedSessionRoute(
                session_id=mapping.session_id,
                thread_root_post_id=anchor,
                status=mapping.status,
                error_message=error_message,
                suggested_action=suggested_action,
            )

        return ThreadPromptRoute(
            session_id=mapping.session_id,
            thread_root_post_id=anchor,
            prompt_text=message.text.strip(),
            attachment_ids=list(message.attachment_ids),
        )
