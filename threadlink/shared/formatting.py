"""Presentation helpers for durations, relative times, token counts and costs."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def format_duration(start: datetime, end: datetime) -> str:
    """Human duration between two timestamps, e.g. ``2 hours 5 minutes``."""
    seconds = max(0, int((end - start).total_seconds()))
    minutes = seconds // 60
    if minutes < 60:
        return _plural(minutes, "minute")
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{_plural(hours, 'hour')} {_plural(minutes, 'minute')}"
    days, hours = divmod(hours, 24)
    return f"{_plural(days, 'day')} {_plural(hours, 'hour')}"


def format_elapsed(seconds: float) -> str:
    """Compact elapsed time: ``42s``, ``3m 07s``, ``1h 02m``."""
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def format_relative_time(then: datetime, now: datetime | None = None) -> str:
    now = now or utcnow()
    minutes = int((now - then).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 1_000_000:
        return f"{count / 1000:.1f}k"
    return f"{count / 1_000_000:.2f}M"


def format_cost(cost: float) -> str:
    if cost <= 0:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def project_name_from_directory(directory: str) -> str:
    parts = [p for p in directory.replace("\\", "/").split("/") if p]
    return parts[-1] if parts else "unknown"
