"""Per-session response aggregation and throttled rendering.

One ResponseContext per session with a prompt in flight. Runtime events
update the context; renders are rate limited so the chat platform sees
at most ``edit_rate_limit`` edits per second per session, with at most
one render outstanding at a time.

Phase flow:
    queued -> connecting -> processing <-> tool_running
                               |  ^
                               v  |
                  waiting (permission/question), retrying
    ... -> complete | error

The context is destroyed on idle (normal path), on a session error, on
dispatch failure, or by the stale-context sweep.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from threadlink.adapters.agent_client import text_part
from threadlink.adapters.attachments import append_attachment_note
from threadlink.adapters.events import (
    MessageCostUpdated,
    PermissionRequested,
    ReasoningDelta,
    RuntimeEvent,
    SessionCompacted,
    SessionDeleted,
    SessionError,
    SessionIdle,
    SessionStatusChanged,
    TextDelta,
    TodoUpdated,
    ToolStateChanged,
)
from threadlink.shared.formatting import format_elapsed

from .config import NotificationsConfig, StreamingConfig
from .errors import AgentRuntimeError, ChatClientError, DispatchError
from .models import (
    ActiveTool,
    ModelSelection,
    PromptPhase,
    ResponseContext,
    TERMINAL_PHASES,
    ThreadSessionMapping,
    ToolCall,
)
from .monitor import AlertType, Monitor
from .rendering import render_response
from .streamer import ResponseStreamer

if TYPE_CHECKING:
    from threadlink.adapters.agent_client import AgentClient
    from threadlink.adapters.attachments import AttachmentHandler
    from threadlink.adapters.chat_client import ChatClient

    from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

QUEUED_NOTICE = (
    ":hourglass_flowing_sand: The session is still working on the previous prompt; "
    "this one is queued behind it."
)


def _apply_part(parts: dict[str, str], part_id: str, delta: str, text: str | None) -> int:
    """Apply one streamed delta; returns the number of new characters.

    The part's full text, when the runtime sends it with the delta,
    replaces the accumulated text so a missed delta self-corrects.
    """
    before = len(parts.get(part_id, ""))
    if text is not None:
        parts[part_id] = text
    else:
        parts[part_id] = parts.get(part_id, "") + delta
    return max(0, len(parts[part_id]) - before)


class ResponseAggregator:
    """Owns every live ResponseContext, keyed by session id."""

    def __init__(
        self,
        chat: ChatClient,
        agent: AgentClient,
        registry: SessionRegistry,
        config: StreamingConfig | None = None,
        notifications: NotificationsConfig | None = None,
        monitor: Monitor | None = None,
        attachments: AttachmentHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._chat = chat
        self._agent = agent
        self._registry = registry
        self._config = config or StreamingConfig()
        self._notifications = notifications or NotificationsConfig()
        self._monitor = monitor
        self._attachments = attachments
        self._clock = clock
        self._contexts: dict[str, ResponseContext] = {}

    # ── Context access ──────────────────────────────────────

    def get_context(self, session_id: str) -> ResponseContext | None:
        return self._contexts.get(session_id)

    def has_context(self, session_id: str) -> bool:
        return session_id in self._contexts

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._contexts)

    # ── Dispatch ────────────────────────────────────────────

    async def dispatch(
        self,
        mapping: ThreadSessionMapping,
        prompt_text: str,
        *,
        attachments: Iterable[str] = (),
        model: ModelSelection | None = None,
    ) -> bool:
        """Send a prompt to the mapping's session and start aggregating.

        Returns False when the prompt could not be delivered; the failure
        is rendered in the thread and the context is destroyed.
        """
        session_id = mapping.session_id
        text = append_attachment_note(prompt_text, list(attachments))
        selection = model or mapping.selected_model

        if session_id in self._contexts:
            return await self._dispatch_while_busy(mapping, text, selection)

        ctx = ResponseContext(
            session_id=session_id,
            short_id=mapping.short_id,
            channel_id=mapping.dm_channel_id,
            thread_root_post_id=mapping.thread_root_post_id,
            started_at=self._clock(),
            phase=PromptPhase.QUEUED,
            phase_detail="Received message...",
        )
        try:
            head = await self._chat.create_post(
                ctx.channel_id,
                render_response(ctx, self._clock()),
                root_id=ctx.thread_root_post_id,
            )
        except ChatClientError as exc:
            logger.error("Could not post status message for session %s: %s", ctx.short_id, exc)
            return False
        ctx.stream = ResponseStreamer(
            self._chat,
            ctx.channel_id,
            ctx.thread_root_post_id,
            head.id,
            max_post_length=self._config.max_post_length,
        )
        self._contexts[session_id] = ctx

        try:
            ctx.cost_seed = await self._agent.prior_usage(session_id)
        except AgentRuntimeError as exc:
            logger.debug("No prior usage for session %s: %s", ctx.short_id, exc)

        ctx.phase = PromptPhase.CONNECTING
        await self._render_now(ctx)

        try:
            await self._send(session_id, text, selection)
        except DispatchError as exc:
            logger.error("Dispatch to session %s failed: %s", ctx.short_id, exc.reason)
            ctx.phase_detail = f"Failed to send prompt: {exc.reason}"
            ctx.recoverable = exc.recoverable
            await self._finish(ctx, PromptPhase.ERROR)
            self._registry.mark_unavailable(session_id)
            return False

        if ctx.phase == PromptPhase.CONNECTING:
            ctx.phase = PromptPhase.PROCESSING
        self.request_render(ctx)
        logger.info("Prompt dispatched to session %s", ctx.short_id)
        return True

    async def _send(self, session_id: str, text: str, model: ModelSelection | None) -> None:
        try:
            await self._agent.dispatch_prompt(
                session_id, [text_part(text)], model=model,
            )
        except AgentRuntimeError as exc:
            recoverable = exc.status is None or exc.status >= 500
            raise DispatchError(session_id, exc.reason, recoverable=recoverable) from exc

    async def _dispatch_while_busy(
        self,
        mapping: ThreadSessionMapping,
        text: str,
        model: ModelSelection | None,
    ) -> bool:
        try:
            await self._chat.create_post(
                mapping.dm_channel_id, QUEUED_NOTICE, root_id=mapping.thread_root_post_id,
            )
        except ChatClientError as exc:
            logger.warning("Could not post queued notice for %s: %s", mapping.short_id, exc)
        try:
            await self._send(mapping.session_id, text, model)
        except DispatchError as exc:
            logger.error("Queued dispatch to session %s failed: %s", mapping.short_id, exc.reason)
            try:
                await self._chat.create_post(
                    mapping.dm_channel_id,
                    f":x: **Error**\nFailed to send prompt: {exc.reason}",
                    root_id=mapping.thread_root_post_id,
                )
            except ChatClientError:
                logger.warning("Could not post dispatch error for %s", mapping.short_id)
            return False
        return True

    # ── Events ──────────────────────────────────────────────

    async def handle_event(self, event: RuntimeEvent) -> None:
        ctx = self._contexts.get(event.session_id)
        if ctx is None:
            await self._monitor_only(event)
            return

        if isinstance(event, TextDelta):
            self._on_text(ctx, event.part_id, event.delta, event.text, reasoning=False)
        elif isinstance(event, ReasoningDelta):
            self._on_text(ctx, event.part_id, event.delta, event.text, reasoning=True)
        elif isinstance(event, ToolStateChanged):
            await self._on_tool(ctx, event)
        elif isinstance(event, PermissionRequested):
            ctx.phase = PromptPhase.WAITING
            ctx.phase_detail = "Awaiting permission approval"
            if event.title:
                ctx.phase_detail += f"\n> {event.title}"
            self.request_render(ctx)
        elif isinstance(event, SessionCompacted):
            ctx.compactions += 1
            self.request_render(ctx)
        elif isinstance(event, MessageCostUpdated):
            ctx.message_usage[event.message_id] = event.usage
            ctx.current_message_id = event.message_id
            self.request_render(ctx)
        elif isinstance(event, TodoUpdated):
            ctx.todos = list(event.todos)
            self.request_render(ctx)
        elif isinstance(event, SessionStatusChanged):
            await self._on_status(ctx, event)
        elif isinstance(event, SessionError):
            ctx.phase_detail = event.error
            ctx.recoverable = True
            await self._finish(ctx, PromptPhase.ERROR)
        elif isinstance(event, SessionDeleted):
            ctx.phase_detail = "The agent session was deleted."
            ctx.recoverable = False
            await self._finish(ctx, PromptPhase.ERROR)
        elif isinstance(event, SessionIdle):
            await self._finish(ctx, PromptPhase.COMPLETE)

    async def _monitor_only(self, event: RuntimeEvent) -> None:
        if self._monitor is None:
            return
        if isinstance(event, PermissionRequested):
            await self._monitor.alert(event.session_id, AlertType.PERMISSION, event.title)
        elif isinstance(event, ToolStateChanged) and event.is_question and not event.is_finished:
            await self._monitor.alert(event.session_id, AlertType.QUESTION, event.title)
        elif isinstance(event, SessionIdle):
            await self._monitor.alert(event.session_id, AlertType.IDLE)

    def _on_text(
        self,
        ctx: ResponseContext,
        part_id: str,
        delta: str,
        text: str | None,
        reasoning: bool,
    ) -> None:
        # Snapshots without a delta include the parts of the user's own prompt
        if not delta:
            return
        parts = ctx.reasoning_parts if reasoning else ctx.text_parts
        added = _apply_part(parts, part_id, delta, text)
        if ctx.phase in (PromptPhase.QUEUED, PromptPhase.CONNECTING, PromptPhase.RETRYING):
            ctx.phase = PromptPhase.PROCESSING
        if not added:
            return
        ctx.pending_chars += added
        if ctx.pending_chars >= self._config.buffer_size:
            self.request_render(ctx)
        else:
            self._schedule_flush(ctx, self._config.max_delay_ms / 1000.0)

    async def _on_tool(self, ctx: ResponseContext, event: ToolStateChanged) -> None:
        now = self._clock()
        if not event.is_finished:
            tool = ctx.active_tool
            if tool is None or tool.call_id != event.call_id:
                tool = ActiveTool(
                    call_id=event.call_id,
                    name=event.tool,
                    started_at=now,
                    title=event.title,
                    is_shell=event.is_shell,
                )
                ctx.active_tool = tool
                ctx.shell_lines = []
                ctx.shell_hidden_lines = 0
            elif event.title:
                tool.title = event.title
            if tool.is_shell and event.output:
                self._update_shell_tail(ctx, event.output, now)
            if event.is_question:
                ctx.phase = PromptPhase.WAITING
                ctx.phase_detail = "Awaiting your response"
                if event.title:
                    ctx.phase_detail += f"\n> {event.title}"
            else:
                ctx.phase = PromptPhase.TOOL_RUNNING
            self._start_ticker(ctx)
            self.request_render(ctx)
            return

        if any(call.call_id == event.call_id for call in ctx.tool_calls):
            return
        tool = ctx.active_tool
        started = tool.started_at if tool is not None and tool.call_id == event.call_id else now
        ctx.tool_calls.append(ToolCall(
            call_id=event.call_id,
            name=event.tool,
            started_at=started,
            ended_at=now,
            failed=event.status == "error",
        ))
        if tool is not None and tool.call_id == event.call_id:
            ctx.active_tool = None
            ctx.shell_lines = []
            ctx.shell_hidden_lines = 0
        if ctx.active_tool is None:
            self._stop_ticker(ctx)
            if ctx.phase in (PromptPhase.TOOL_RUNNING, PromptPhase.WAITING):
                ctx.phase = PromptPhase.PROCESSING
        if event.attachments and self._attachments is not None:
            await self._attachments.upload_outbound(
                ctx.channel_id, ctx.thread_root_post_id, event.attachments,
            )
        self.request_render(ctx)

    def _update_shell_tail(self, ctx: ResponseContext, output: str, now: float) -> None:
        lines = output.rstrip("\n").split("\n")
        keep = self._config.shell_tail_lines
        tail = lines[-keep:] if keep > 0 else []
        hidden = len(lines) - len(tail)
        if tail != ctx.shell_lines or hidden != ctx.shell_hidden_lines:
            ctx.shell_lines = tail
            ctx.shell_hidden_lines = hidden
            if ctx.active_tool is not None:
                ctx.active_tool.last_output_at = now

    async def _on_status(self, ctx: ResponseContext, event: SessionStatusChanged) -> None:
        if event.status == "retry":
            ctx.phase = PromptPhase.RETRYING
            ctx.retry_attempt = event.attempt
            ctx.retry_max_attempts = event.max_attempts
            ctx.phase_detail = event.message
            ctx.next_retry_at = None
            if event.next_retry_ms is not None:
                # next_retry_ms is a wall-clock epoch timestamp in milliseconds
                wait = event.next_retry_ms / 1000.0 - time.time()
                ctx.next_retry_at = self._clock() + max(0.0, wait)
            self.request_render(ctx)
        elif event.status == "busy":
            if ctx.phase in (PromptPhase.RETRYING, PromptPhase.QUEUED, PromptPhase.CONNECTING):
                ctx.phase = (
                    PromptPhase.TOOL_RUNNING if ctx.active_tool is not None
                    else PromptPhase.PROCESSING
                )
                ctx.phase_detail = ""
                self.request_render(ctx)
        elif event.status == "idle":
            await self._finish(ctx, PromptPhase.COMPLETE)

    # ── Throttled rendering ─────────────────────────────────

    def request_render(self, ctx: ResponseContext) -> None:
        """Render soon, respecting the edit rate and the single-flight rule."""
        if self._contexts.get(ctx.session_id) is not ctx:
            return
        if ctx.render_task is not None and not ctx.render_task.done():
            ctx.dirty = True
            return
        wait = self._config.min_edit_interval - (self._clock() - ctx.last_render_at)
        if wait <= 0:
            self._cancel_flush(ctx)
            ctx.render_task = asyncio.create_task(self._render_loop(ctx))
        else:
            self._schedule_flush(ctx, min(wait, self._config.max_delay_ms / 1000.0))

    def _schedule_flush(self, ctx: ResponseContext, delay: float) -> None:
        if ctx.flush_handle is not None:
            return
        loop = asyncio.get_running_loop()
        ctx.flush_handle = loop.call_later(delay, self._on_flush_timer, ctx)

    def _on_flush_timer(self, ctx: ResponseContext) -> None:
        ctx.flush_handle = None
        if self._contexts.get(ctx.session_id) is not ctx:
            return
        if ctx.render_task is not None and not ctx.render_task.done():
            ctx.dirty = True
            return
        ctx.render_task = asyncio.create_task(self._render_loop(ctx))

    def _cancel_flush(self, ctx: ResponseContext) -> None:
        if ctx.flush_handle is not None:
            ctx.flush_handle.cancel()
            ctx.flush_handle = None

    async def _render_loop(self, ctx: ResponseContext) -> None:
        await self._render_now(ctx)
        if ctx.dirty and self._contexts.get(ctx.session_id) is ctx:
            ctx.dirty = False
            ctx.render_task = None
            self.request_render(ctx)

    async def _render_now(self, ctx: ResponseContext) -> None:
        now = self._clock()
        ctx.dirty = False
        ctx.pending_chars = 0
        ctx.last_render_at = now
        content = render_response(
            ctx,
            now,
            heartbeat_seconds=self._config.heartbeat_seconds,
            thinking_chars=self._config.thinking_preview_chars,
        )
        try:
            await ctx.stream.update(content)
        except ChatClientError as exc:
            logger.warning("Render for session %s failed: %s", ctx.short_id, exc)

    # ── Tool ticker ─────────────────────────────────────────

    def _start_ticker(self, ctx: ResponseContext) -> None:
        if ctx.ticker is None or ctx.ticker.done():
            ctx.ticker = asyncio.create_task(self._tick(ctx))

    def _stop_ticker(self, ctx: ResponseContext) -> None:
        if ctx.ticker is not None:
            ctx.ticker.cancel()
            ctx.ticker = None

    async def _tick(self, ctx: ResponseContext) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.tool_tick_seconds)
                if ctx.active_tool is None or self._contexts.get(ctx.session_id) is not ctx:
                    return
                self.request_render(ctx)
            except asyncio.CancelledError:
                return

    # ── Termination ─────────────────────────────────────────

    async def _finish(self, ctx: ResponseContext, phase: PromptPhase) -> None:
        """Final render, then destroy the context."""
        if ctx.phase in TERMINAL_PHASES and ctx.finished_at is not None:
            return
        self._stop_ticker(ctx)
        self._cancel_flush(ctx)
        pending = ctx.render_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            ctx.dirty = False
            try:
                await pending
            except Exception:
                logger.exception("In-flight render for session %s failed", ctx.short_id)
        ctx.render_task = None
        ctx.phase = phase
        ctx.finished_at = self._clock()
        if phase == PromptPhase.COMPLETE:
            ctx.active_tool = None
        self._contexts.pop(ctx.session_id, None)
        await self._render_now(ctx)
        elapsed = format_elapsed(ctx.finished_at - ctx.started_at)
        logger.info("Session %s %s after %s", ctx.short_id, phase.value, elapsed)

        if phase == PromptPhase.COMPLETE and self._notifications.on_completion:
            await self._notify(ctx, f":white_check_mark: **Task Completed** in {elapsed}")
        elif phase == PromptPhase.ERROR and self._notifications.on_error:
            await self._notify(ctx, f":x: **Error Occurred**\n\n{ctx.phase_detail}")

    async def _notify(self, ctx: ResponseContext, message: str) -> None:
        try:
            await self._chat.create_post(ctx.channel_id, message, root_id=ctx.thread_root_post_id)
        except ChatClientError as exc:
            logger.warning("Could not post notice for session %s: %s", ctx.short_id, exc)

    async def sweep_stale(self, max_age_seconds: float | None = None) -> int:
        """Fail contexts older than *max_age_seconds* (a missed idle signal)."""
        limit = max_age_seconds if max_age_seconds is not None else self._config.max_context_age_seconds
        now = self._clock()
        stale = [c for c in self._contexts.values() if now - c.started_at > limit]
        for ctx in stale:
            logger.warning("Dropping stale response context for session %s", ctx.short_id)
            ctx.phase_detail = f"No completion signal after {format_elapsed(limit)}; giving up."
            ctx.recoverable = True
            await self._finish(ctx, PromptPhase.ERROR)
        return len(stale)

    async def shutdown(self) -> None:
        """Cancel every timer and drop all contexts without rendering."""
        for ctx in list(self._contexts.values()):
            self._stop_ticker(ctx)
            self._cancel_flush(ctx)
            if ctx.render_task is not None and not ctx.render_task.done():
                ctx.render_task.cancel()
        self._contexts.clear()
