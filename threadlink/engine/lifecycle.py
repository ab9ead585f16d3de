"""Thread mapping status state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError (a ValueError) rather than silently
proceeding.

State Diagram:

    (none) ──create──> ACTIVE ──┬──> ENDED         (session terminated)
                                │
                                ├──> ORPHANED      (missing from registry)
                                │
                                └──> DISCONNECTED ─┬──> ACTIVE    (reconnect)
                                                   ├──> ORPHANED  (session gone)
                                                   └──> ENDED

    ENDED and ORPHANED are terminal; only a fresh mapping leaves them.
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import MappingStatus

VALID_TRANSITIONS: dict[MappingStatus, set[MappingStatus]] = {
    MappingStatus.ACTIVE: {
        MappingStatus.ENDED,
        MappingStatus.DISCONNECTED,
        MappingStatus.ORPHANED,
    },
    MappingStatus.DISCONNECTED: {
        MappingStatus.ACTIVE,
        MappingStatus.ORPHANED,
        MappingStatus.ENDED,
    },
    MappingStatus.ENDED: set(),
    MappingStatus.ORPHANED: set(),
}

TERMINAL_STATUSES = frozenset({MappingStatus.ENDED, MappingStatus.ORPHANED})


def can_transition(current: MappingStatus, target: MappingStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: MappingStatus, target: MappingStatus) -> None:
    """Validate a status transition. Raises InvalidTransitionError if invalid."""
    if not can_transition(current, target):
        allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
        raise InvalidTransitionError(current.value, target.value, allowed)
