"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via THREADLINK_* env vars;
chat credentials come from MATTERMOST_* env vars.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_PREFIXES = ("THREADLINK_", "MATTERMOST_")
_SECRET_MARKERS = ("TOKEN", "SECRET", "PASSWORD")


async def fire_observers(
    observers: Iterable[Callable[..., Awaitable[Any] | Any]],
    *args: Any,
) -> None:
    """Call each observer in turn, logging and continuing on error."""
    for observer in list(observers):
        try:
            result = observer(*args)
            if hasattr(result, "__await__"):
                await result
        except Exception:
            logger.exception("Observer %r failed", observer)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _log_env_overrides() -> None:
    seen = {
        k: ("***" if any(m in k for m in _SECRET_MARKERS) else v)
        for k, v in os.environ.items()
        if k.startswith(_ENV_PREFIXES)
    }
    if seen:
        logger.info(
            "BridgeConfig.from_env: env overrides: %s",
            ", ".join(f"{k}={v}" for k, v in sorted(seen.items())),
        )
    else:
        logger.debug("BridgeConfig.from_env: no THREADLINK_*/MATTERMOST_* env vars set, using defaults")


@dataclass
class ChatConfig:
    """Chat platform connection."""
    url: str = ""
    token: str = ""
    # Owner of auto-created threads; empty disables auto creation.
    owner_user_id: str = ""
    reconnect_max_seconds: float = 60.0
    request_timeout_seconds: float = 30.0

    @property
    def api_url(self) -> str:
        return self.url.rstrip("/") + "/api/v4"

    @property
    def websocket_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return base + "/api/v4/websocket"

    @classmethod
    def from_env(cls) -> ChatConfig:
        return cls(
            url=os.getenv("MATTERMOST_URL", cls.url),
            token=os.getenv("MATTERMOST_TOKEN", cls.token),
            owner_user_id=os.getenv("MATTERMOST_OWNER_USER_ID", cls.owner_user_id),
            reconnect_max_seconds=_env_float(
                "MATTERMOST_RECONNECT_MAX", cls.reconnect_max_seconds,
            ),
            request_timeout_seconds=_env_float(
                "MATTERMOST_REQUEST_TIMEOUT", cls.request_timeout_seconds,
            ),
        )


@dataclass
class AgentConfig:
    """Agent runtime connection."""
    base_url: str = "http://127.0.0.1:4096"
    request_timeout_seconds: float = 30.0
    # provider/model used when a mapping has no override; empty means runtime default
    default_model: str = ""
    # Directory for sessions created from the main DM channel
    default_directory: str = ""

    @classmethod
    def from_env(cls) -> AgentConfig:
        return cls(
            base_url=os.getenv("THREADLINK_AGENT_URL", cls.base_url),
            request_timeout_seconds=_env_float(
                "THREADLINK_AGENT_TIMEOUT", cls.request_timeout_seconds,
            ),
            default_model=os.getenv("THREADLINK_DEFAULT_MODEL", cls.default_model),
            default_directory=os.getenv(
                "THREADLINK_DEFAULT_DIRECTORY", cls.default_directory,
            ),
        )


@dataclass
class StreamingConfig:
    """Throttling and rendering limits for streamed responses."""
    buffer_size: int = 50
    max_delay_ms: int = 500
    edit_rate_limit: float = 10.0
    max_post_length: int = 15000
    shell_tail_lines: int = 15
    thinking_preview_chars: int = 500
    heartbeat_seconds: float = 10.0
    tool_tick_seconds: float = 1.0
    max_context_age_seconds: float = 7200.0

    @property
    def min_edit_interval(self) -> float:
        return 1.0 / self.edit_rate_limit if self.edit_rate_limit > 0 else 0.0

    @classmethod
    def from_env(cls) -> StreamingConfig:
        return cls(
            buffer_size=_env_int("THREADLINK_STREAM_BUFFER_SIZE", cls.buffer_size),
            max_delay_ms=_env_int("THREADLINK_STREAM_MAX_DELAY_MS", cls.max_delay_ms),
            edit_rate_limit=_env_float(
                "THREADLINK_EDIT_RATE_LIMIT", cls.edit_rate_limit,
            ),
            max_post_length=_env_int(
                "THREADLINK_MAX_POST_LENGTH", cls.max_post_length,
            ),
            shell_tail_lines=_env_int(
                "THREADLINK_SHELL_TAIL_LINES", cls.shell_tail_lines,
            ),
            heartbeat_seconds=_env_float(
                "THREADLINK_HEARTBEAT_SECONDS", cls.heartbeat_seconds,
            ),
            max_context_age_seconds=_env_float(
                "THREADLINK_MAX_CONTEXT_AGE", cls.max_context_age_seconds,
            ),
        )


@dataclass
class SessionSelectionConfig:
    """Session discovery, targeting and mapping persistence."""
    refresh_interval_seconds: float = 60.0
    unavailable_grace_seconds: float = 3600.0
    command_prefix: str = "!"
    auto_create_sessions: bool = True
    # "per_user" keeps one target pointer per chat user; "global" shares one
    target_mode: str = "per_user"
    mapping_path: str | None = None
    save_debounce_seconds: float = 2.0
    # Chat user ids allowed to drive sessions; empty allows everyone
    allowed_users: list[str] = field(default_factory=list)

    def is_allowed(self, user_id: str) -> bool:
        return not self.allowed_users or user_id in self.allowed_users

    @classmethod
    def from_env(cls) -> SessionSelectionConfig:
        return cls(
            refresh_interval_seconds=_env_float(
                "THREADLINK_REFRESH_INTERVAL", cls.refresh_interval_seconds,
            ),
            unavailable_grace_seconds=_env_float(
                "THREADLINK_UNAVAILABLE_GRACE", cls.unavailable_grace_seconds,
            ),
            command_prefix=os.getenv("THREADLINK_COMMAND_PREFIX", cls.command_prefix),
            auto_create_sessions=_env_bool(
                "THREADLINK_AUTO_CREATE_SESSIONS", cls.auto_create_sessions,
            ),
            target_mode=os.getenv("THREADLINK_TARGET_MODE", cls.target_mode),
            mapping_path=os.getenv("THREADLINK_MAPPING_PATH") or None,
            save_debounce_seconds=_env_float(
                "THREADLINK_SAVE_DEBOUNCE", cls.save_debounce_seconds,
            ),
            allowed_users=_env_list("THREADLINK_ALLOWED_USERS", []),
        )


@dataclass
class FilesConfig:
    """Inbound attachment limits."""
    temp_dir: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "threadlink-files")
    )
    max_file_size: int = 10 * 1024 * 1024
    # "*" accepts every extension
    allowed_extensions: list[str] = field(default_factory=lambda: ["*"])

    def allows(self, filename: str) -> bool:
        if "*" in self.allowed_extensions:
            return True
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        return ext in {e.lower().lstrip(".") for e in self.allowed_extensions}

    @classmethod
    def from_env(cls) -> FilesConfig:
        defaults = cls()
        return cls(
            temp_dir=os.getenv("THREADLINK_TEMP_DIR", defaults.temp_dir),
            max_file_size=_env_int("THREADLINK_MAX_FILE_SIZE", defaults.max_file_size),
            allowed_extensions=_env_list(
                "THREADLINK_ALLOWED_EXTENSIONS", defaults.allowed_extensions,
            ),
        )


@dataclass
class NotificationsConfig:
    on_completion: bool = True
    on_permission_request: bool = True
    on_error: bool = True

    @classmethod
    def from_env(cls) -> NotificationsConfig:
        return cls(
            on_completion=_env_bool("THREADLINK_NOTIFY_COMPLETION", cls.on_completion),
            on_permission_request=_env_bool(
                "THREADLINK_NOTIFY_PERMISSION", cls.on_permission_request,
            ),
            on_error=_env_bool("THREADLINK_NOTIFY_ERROR", cls.on_error),
        )


@dataclass
class BridgeConfig:
    """Top-level bridge configuration."""
    chat: ChatConfig = field(default_factory=ChatConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    sessions: SessionSelectionConfig = field(default_factory=SessionSelectionConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    log_level: str = "INFO"
    control_host: str = "127.0.0.1"
    control_port: int = 8765

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from THREADLINK_*/MATTERMOST_* environment variables."""
        _log_env_overrides()
        config = cls(
            chat=ChatConfig.from_env(),
            agent=AgentConfig.from_env(),
            streaming=StreamingConfig.from_env(),
            sessions=SessionSelectionConfig.from_env(),
            files=FilesConfig.from_env(),
            notifications=NotificationsConfig.from_env(),
            log_level=os.getenv("THREADLINK_LOG_LEVEL", cls.log_level),
            control_host=os.getenv("THREADLINK_CONTROL_HOST", cls.control_host),
            control_port=_env_int("THREADLINK_CONTROL_PORT", cls.control_port),
        )
        logger.info(
            "BridgeConfig.from_env: chat=%s agent=%s target_mode=%s log_level=%s",
            config.chat.url or "(unset)", config.agent.base_url,
            config.sessions.target_mode, config.log_level,
        )
        return config

    def validate(self) -> None:
        """Raise ConfigError for settings the bridge cannot start without."""
        if not self.chat.url:
            raise ConfigError("MATTERMOST_URL is required")
        if not self.chat.token:
            raise ConfigError("MATTERMOST_TOKEN is required")
        if self.sessions.target_mode not in ("per_user", "global"):
            raise ConfigError(
                f"target_mode must be 'per_user' or 'global', got {self.sessions.target_mode!r}"
            )
        if not self.sessions.command_prefix:
            raise ConfigError("command_prefix must not be empty")
        if self.streaming.max_post_length < 100:
            raise ConfigError("max_post_length must be at least 100")
        if self.streaming.edit_rate_limit <= 0:
            raise ConfigError("edit_rate_limit must be positive")
