"""threadlink engine: mapping, discovery, routing and response aggregation."""
from .models import (
    InboundMessage,
    MappingStatus,
    ModelSelection,
    PromptPhase,
    ResponseContext,
    RuntimeSession,
    SessionInfo,
    ThreadSessionMapping,
    TokenUsage,
)
from .config import BridgeConfig
from .errors import (
    AgentRuntimeError,
    BridgeError,
    ChatClientError,
    ConfigError,
    DispatchError,
    DuplicateMappingError,
    InvalidTransitionError,
    ThreadCreationError,
    ThreadRootImmutableError,
)

__all__ = [
    # Bridge context object (lazy import to avoid circular deps)
    "Bridge",
    # Models
    "InboundMessage",
    "MappingStatus",
    "ModelSelection",
    "PromptPhase",
    "ResponseContext",
    "RuntimeSession",
    "SessionInfo",
    "ThreadSessionMapping",
    "TokenUsage",
    # Config
    "BridgeConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Components (lazy import)
    "MappingStore",
    "SessionRegistry",
    "ThreadManager",
    "InboundRouter",
    "CommandDispatcher",
    "ResponseAggregator",
    # Errors
    "AgentRuntimeError",
    "BridgeError",
    "ChatClientError",
    "ConfigError",
    "DispatchError",
    "DuplicateMappingError",
    "InvalidTransitionError",
    "ThreadCreationError",
    "ThreadRootImmutableError",
]


def __getattr__(name: str):
    if name == "Bridge":
        from .bridge import Bridge
        return Bridge
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "MappingStore":
        from .mapping_store import MappingStore
        return MappingStore
    if name == "SessionRegistry":
        from .session_registry import SessionRegistry
        return SessionRegistry
    if name == "ThreadManager":
        from .thread_manager import ThreadManager
        return ThreadManager
    if name == "InboundRouter":
        from .inbound_router import InboundRouter
        return InboundRouter
    if name == "CommandDispatcher":
        from .commands import CommandDispatcher
        return CommandDispatcher
    if name == "ResponseAggregator":
        from .aggregation import ResponseAggregator
        return ResponseAggregator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
