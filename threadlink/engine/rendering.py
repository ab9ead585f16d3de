"""Pure rendering of a ResponseContext into post markdown.

Section order: status line, todo list, shell output (only while a shell
tool is active), response text, trailing thinking excerpt.
"""
from __future__ import annotations

from threadlink.shared.formatting import format_cost, format_elapsed, format_tokens

from .models import PromptPhase, ResponseContext, TodoItem

PHASE_EMOJI = {
    PromptPhase.QUEUED: "⏳",
    PromptPhase.CONNECTING: "🔗",
    PromptPhase.PROCESSING: "💻",
    PromptPhase.TOOL_RUNNING: "🔧",
    PromptPhase.WAITING: "⏸️",
    PromptPhase.RETRYING: "🔄",
    PromptPhase.ERROR: "❌",
    PromptPhase.COMPLETE: "✅",
}

PHASE_LABELS = {
    PromptPhase.QUEUED: "Queued",
    PromptPhase.CONNECTING: "Connecting",
    PromptPhase.PROCESSING: "Processing",
    PromptPhase.TOOL_RUNNING: "Running Tool",
    PromptPhase.WAITING: "Waiting",
    PromptPhase.RETRYING: "Retrying",
    PromptPhase.ERROR: "Error",
    PromptPhase.COMPLETE: "Complete",
}

TODO_ICONS = {
    "completed": "✅",
    "in_progress": "🔄",
    "pending": "⏳",
    "cancelled": "❌",
}
_TODO_STATUS_ORDER = {"in_progress": 0, "pending": 1, "completed": 2, "cancelled": 3}
_TODO_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

RETRY_HINT = "_Reply in this thread to try again_"


def render_status_line(ctx: ResponseContext, now: float) -> str:
    end = ctx.finished_at if ctx.finished_at is not None else now
    parts = [
        f"{PHASE_EMOJI[ctx.phase]} **{PHASE_LABELS[ctx.phase]}**",
        format_elapsed(end - ctx.started_at),
    ]
    tally = ctx.tool_tally()
    if tally:
        parts.append("🛠️ " + ", ".join(f"{name} ×{count}" for name, count in tally.items()))
    if ctx.compactions:
        parts.append(f"🗜️ compacted ×{ctx.compactions}")
    total = ctx.session_total
    if total.total_tokens or total.cost:
        usage = f"{format_tokens(total.total_tokens)} tokens · {format_cost(total.cost)}"
        current = ctx.current_usage
        if current.total_tokens and current.total_tokens != total.total_tokens:
            usage += f" (this message {format_tokens(current.total_tokens)})"
        parts.append(usage)
    line = " · ".join(parts)

    detail = _phase_detail(ctx, now)
    return f"{line}\n{detail}" if detail else line


def _phase_detail(ctx: ResponseContext, now: float) -> str:
    phase = ctx.phase
    if phase == PromptPhase.QUEUED:
        return ctx.phase_detail
    if phase == PromptPhase.CONNECTING:
        return f"Session: `{ctx.short_id}`"
    if phase == PromptPhase.WAITING:
        text = ctx.phase_detail or "Awaiting your response"
        return text
    if phase == PromptPhase.RETRYING:
        text = f"Attempt {ctx.retry_attempt}"
        if ctx.retry_max_attempts:
            text += f"/{ctx.retry_max_attempts}"
        if ctx.next_retry_at is not None and ctx.next_retry_at > now:
            text += f" - retry in {round(ctx.next_retry_at - now)}s"
        if ctx.phase_detail:
            text += f"\n> {ctx.phase_detail}"
        return text
    if phase == PromptPhase.ERROR:
        text = ctx.phase_detail or "Unknown error"
        if ctx.recoverable:
            text += f"\n\n{RETRY_HINT}"
        return text
    if phase == PromptPhase.COMPLETE:
        end = ctx.finished_at if ctx.finished_at is not None else now
        return f"Completed in {format_elapsed(end - ctx.started_at)}"
    if ctx.active_tool is not None:
        tool = ctx.active_tool
        label = f"▶️ `{tool.name}`"
        if tool.title:
            label += f" {tool.title}"
        return f"{label} ({format_elapsed(now - tool.started_at)})"
    return ""


def render_todos(todos: list[TodoItem]) -> str:
    if not todos:
        return ""
    done = sum(1 for t in todos if t.status == "completed")
    ordered = sorted(
        todos,
        key=lambda t: (
            _TODO_STATUS_ORDER.get(t.status, 99),
            _TODO_PRIORITY_ORDER.get(t.priority, 99),
        ),
    )
    lines = [f"📋 **Task List** ({done}/{len(todos)} complete)"]
    for todo in ordered:
        icon = TODO_ICONS.get(todo.status, "❓")
        high = " 🔴" if todo.priority == "high" else ""
        if todo.status == "completed":
            lines.append(f"{icon} ~~{todo.content}~~{high}")
        elif todo.status == "cancelled":
            lines.append(f"{icon} ~~{todo.content}~~ _(cancelled)_")
        else:
            lines.append(f"{icon} {todo.content}{high}")
    return "\n".join(lines)


def render_shell(ctx: ResponseContext, now: float, heartbeat_seconds: float) -> str:
    tool = ctx.active_tool
    if tool is None or not tool.is_shell:
        return ""
    body: list[str] = []
    if ctx.shell_hidden_lines:
        body.append(f"... {ctx.shell_hidden_lines} lines hidden")
    body.extend(ctx.shell_lines)
    block = "```\n" + ("\n".join(body) if body else "(no output yet)") + "\n```"
    silent_for = now - (tool.last_output_at if tool.last_output_at is not None else tool.started_at)
    if silent_for >= heartbeat_seconds:
        block += f"\n_⏱️ Still running, last output {format_elapsed(silent_for)} ago_"
    return block


def render_thinking(ctx: ResponseContext, max_chars: int) -> str:
    reasoning = ctx.reasoning_text.strip()
    if not reasoning:
        return ""
    truncated = len(reasoning) > max_chars
    excerpt = reasoning[-max_chars:] if truncated else reasoning
    quoted = "\n".join(f"> {line}" for line in excerpt.splitlines())
    header = "💭 **Thinking**" + (f" _(last {max_chars} chars)_" if truncated else "")
    return f"{header}\n> ...\n{quoted}" if truncated else f"{header}\n{quoted}"


def render_response(
    ctx: ResponseContext,
    now: float,
    *,
    heartbeat_seconds: float = 10.0,
    thinking_chars: int = 500,
) -> str:
    """Compose the full post body for *ctx* as of *now*."""
    sections = [render_status_line(ctx, now)]
    todos = render_todos(ctx.todos)
    if todos:
        sections.append(todos)
    shell = render_shell(ctx, now, heartbeat_seconds)
    if shell:
        sections.append(shell)
    text = ctx.response_text
    if text:
        sections.append("---\n\n" + text)
    elif ctx.phase == PromptPhase.COMPLETE:
        sections.append("---\n\n_(No response)_")
    thinking = render_thinking(ctx, thinking_chars)
    if thinking:
        sections.append("---\n" + thinking)
    return "\n\n".join(sections)
