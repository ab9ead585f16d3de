"""Exception hierarchy for the bridge engine.

Specific exceptions for each failure mode. Routing outcomes are not
exceptions; see inbound_router.py.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration is missing or invalid."""


class ChatClientError(BridgeError):
    """A chat platform request failed or the platform was unreachable."""
    def __init__(self, operation: str, reason: str, status: int | None = None):
        self.operation = operation
        self.reason = reason
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Chat {operation} failed{detail}: {reason}")

    @property
    def is_transient(self) -> bool:
        return self.status is None or self.status >= 500 or self.status == 429


class AgentRuntimeError(BridgeError):
    """An agent runtime request failed or the runtime was unreachable."""
    def __init__(self, operation: str, reason: str, status: int | None = None):
        self.operation = operation
        self.reason = reason
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Agent runtime {operation} failed{detail}: {reason}")


class DuplicateMappingError(BridgeError):
    """A mapping for this session (or thread root) already exists."""
    def __init__(self, session_id: str, field_name: str = "session_id"):
        self.session_id = session_id
        self.field_name = field_name
        super().__init__(
            f"Mapping already exists for {field_name} of session {session_id}"
        )


class ThreadRootImmutableError(BridgeError):
    """An update tried to move a mapping to a different thread root."""
    def __init__(self, session_id: str, current_root: str, new_root: str):
        self.session_id = session_id
        self.current_root = current_root
        self.new_root = new_root
        super().__init__(
            f"Thread root of session {session_id} is {current_root}; "
            f"cannot reassign to {new_root}"
        )


class InvalidTransitionError(BridgeError, ValueError):
    """A mapping status transition is not allowed."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class ThreadCreationError(BridgeError):
    """The root post for a session thread could not be created."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to create thread for session {session_id}: {reason}")


class DispatchError(BridgeError):
    """A prompt could not be injected into an agent session."""
    def __init__(self, session_id: str, reason: str, recoverable: bool = True):
        self.session_id = session_id
        self.reason = reason
        self.recoverable = recoverable
        super().__init__(f"Failed to dispatch prompt to {session_id}: {reason}")
