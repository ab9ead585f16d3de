"""Main-conversation commands: sessions, use, current, help."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from threadlink.shared.formatting import format_relative_time, truncate

from .inbound_router import KNOWN_COMMANDS, ParsedCommand
from .mapping_store import MappingStore
from .models import SessionInfo
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

_GLOBAL_KEY = "*"


class SessionTargets:
    """Which session each user's commands currently point at.

    In ``per_user`` mode each chat user has an independent pointer; in
    ``global`` mode all users share one.
    """

    def __init__(self, mode: str = "per_user") -> None:
        if mode not in ("per_user", "global"):
            raise ValueError(f"unknown target mode {mode!r}")
        self.mode = mode
        self._targets: dict[str, str] = {}

    def _key(self, user_id: str) -> str:
        return _GLOBAL_KEY if self.mode == "global" else user_id

    def get(self, user_id: str) -> str | None:
        return self._targets.get(self._key(user_id))

    def set(self, user_id: str, session_id: str) -> None:
        self._targets[self._key(user_id)] = session_id

    def clear(self, user_id: str) -> None:
        self._targets.pop(self._key(user_id), None)


@dataclass
class CommandResult:
    success: bool
    message: str


CommandHandler = Callable[[ParsedCommand, str], Awaitable[CommandResult]]


class CommandDispatcher:
    """Maps parsed commands to handlers returning user-facing text."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: MappingStore,
        targets: SessionTargets,
        prefix: str = "!",
    ) -> None:
        self._registry = registry
        self._store = store
        self._targets = targets
        self._prefix = prefix
        self._handlers: dict[str, CommandHandler] = {
            "sessions": self._sessions,
            "use": self._use,
            "current": self._current,
            "help": self._help,
        }

    def is_known(self, name: str) -> bool:
        return name in self._handlers

    async def execute(self, command: ParsedCommand, user_id: str) -> CommandResult:
        handler = self._handlers.get(command.name)
        if handler is None:
            return CommandResult(
                success=False,
                message=(
                    f"Unknown command: `{self._prefix}{command.name}`\n\n"
                    f"Type `{self._prefix}help` for available commands."
                ),
            )
        try:
            return await handler(command, user_id)
        except Exception as exc:
            logger.exception("Command %s failed", command.name)
            return CommandResult(success=False, message=f"Error executing command: {exc}")

    async def _sessions(self, command: ParsedCommand, user_id: str) -> CommandResult:
        await self._registry.refresh()
        sessions = self._registry.list_available()
        if not sessions:
            return CommandResult(
                success=True,
                message=(
                    "No active agent sessions found.\n\n"
                    "Start the agent in a project directory to create a session."
                ),
            )
        return CommandResult(success=True, message="\n".join(self._format_list(sessions, user_id)))

    def _format_list(self, sessions: list[SessionInfo], user_id: str) -> list[str]:
        current_id = self._effective_target(user_id)
        lines = [":clipboard: **Available Agent Sessions:**", ""]
        for index, session in enumerate(sessions, start=1):
            marker = " :white_check_mark:" if session.id == current_id else ""
            mapping = self._store.get_by_session_id(session.id)
            link = (
                f" [:thread: thread](/_redirect/pl/{mapping.thread_root_post_id})"
                if mapping is not None else ""
            )
            lines.append(f"**{index}.** `{session.short_id}`{marker}{link}")
            lines.append(f"   {truncate(session.title, 50)}")
            lines.append(
                f"   _{session.project_name}_ • {format_relative_time(session.last_updated)}"
            )
            lines.append("")

        current = next((s for s in sessions if s.id == current_id), None)
        if current is not None:
            lines.append(f":white_check_mark: = current target (`{current.short_id}`)")
        lines.append(":thread: = click to open session thread")
        lines.append("")
        lines.append(
            f"**Commands:** `{self._prefix}use <id>` to switch, "
            f"`{self._prefix}current` for details"
        )
        return lines

    def _effective_target(self, user_id: str) -> str | None:
        target = self._targets.get(user_id)
        if target is not None:
            return target
        default = self._registry.get_default()
        return default.id if default is not None else None

    async def _use(self, command: ParsedCommand, user_id: str) -> CommandResult:
        query = command.raw_args.strip()
        if not query:
            return CommandResult(
                success=False,
                message=(
                    f"Usage: `{self._prefix}use <session-id>`\n\n"
                    f"Use `{self._prefix}sessions` to see available sessions."
                ),
            )
        session = self._registry.get(query)
        if session is None:
            return CommandResult(
                success=False,
                message=(
                    f"Session not found: `{query}`\n\n"
                    f"Use `{self._prefix}sessions` to see available sessions."
                ),
            )
        if not session.is_available:
            return CommandResult(
                success=False,
                message=(
                    f"Session `{session.short_id}` ({session.project_name}) is no longer "
                    f"available.\n\nUse `{self._prefix}sessions` to see current sessions."
                ),
            )

        self._targets.set(user_id, session.id)
        logger.info("User %s switched to session %s", user_id[:8], session.short_id)
        lines = [
            ":white_check_mark: **Session Changed**",
            "",
            f"Now targeting: **{session.project_name}** (`{session.short_id}`)",
            f"Directory: `{session.directory}`",
        ]
        mapping = self._store.get_by_session_id(session.id)
        if mapping is not None:
            lines += ["", f"Reply in [its thread](/_redirect/pl/{mapping.thread_root_post_id}) to send prompts."]
        return CommandResult(success=True, message="\n".join(lines))

    async def _current(self, command: ParsedCommand, user_id: str) -> CommandResult:
        target_id = self._targets.get(user_id)
        if target_id is None:
            default = self._registry.get_default()
            if default is not None:
                return CommandResult(
                    success=True,
                    message="\n".join([
                        ":information_source: **No explicit session selected**",
                        "",
                        f"Using default: **{default.project_name}** (`{default.short_id}`)",
                        "",
                        f"Use `{self._prefix}use <id>` to select a specific session.",
                    ]),
                )
            return CommandResult(
                success=True,
                message=(
                    "No session selected and no default available.\n\n"
                    f"Use `{self._prefix}sessions` to see available sessions."
                ),
            )

        session = self._registry.get(target_id)
        if session is None or not session.is_available:
            self._targets.clear(user_id)
            return CommandResult(
                success=False,
                message=(
                    ":warning: Previously selected session is no longer available.\n\n"
                    f"Use `{self._prefix}sessions` to select a new one."
                ),
            )

        lines = [
            ":dart: **Current Session**",
            "",
            f"Project: **{session.project_name}**",
            f"ID: `{session.short_id}`",
            f"Directory: `{session.directory}`",
            f"Last updated: {session.last_updated.isoformat(timespec='seconds')}",
        ]
        mapping = self._store.get_by_session_id(session.id)
        if mapping is not None and mapping.selected_model is not None:
            lines.append(f"Model: `{mapping.selected_model}`")
        return CommandResult(success=True, message="\n".join(lines))

    async def _help(self, command: ParsedCommand, user_id: str) -> CommandResult:
        p = self._prefix
        descriptions = {
            "sessions": "List available agent sessions",
            "use": "Switch to a different session",
            "current": "Show currently targeted session",
            "help": "Show this help message",
        }
        usage = {"use": f"{p}use <id>"}
        lines = [
            ":question: **Available Commands**",
            "",
            "| Command | Description |",
            "|---------|-------------|",
        ]
        for name in KNOWN_COMMANDS:
            lines.append(f"| `{usage.get(name, p + name)}` | {descriptions[name]} |")
        lines += [
            "",
            "**Thread-Based Workflow:**",
            "- Each agent session has its own thread",
            "- Send prompts by replying in a session's thread",
            f"- Use `{p}sessions` to see thread links",
            "- Commands work in the main conversation, prompts go in threads",
        ]
        return CommandResult(success=True, message="\n".join(lines))
