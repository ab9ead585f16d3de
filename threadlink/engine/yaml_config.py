"""YAML configuration loader.

Loads a single YAML file whose sections override the environment
configuration. When no YAML is given, env vars work exactly as before.

Example YAML:
    chat:
      url: https://chat.example.com
      token: ${MATTERMOST_TOKEN}
      owner_user_id: 8d3k...

    agent:
      base_url: http://127.0.0.1:4096
      default_model: anthropic/claude-sonnet-4

    streaming:
      edit_rate_limit: 5
      max_post_length: 15000

    sessions:
      command_prefix: "!"
      target_mode: global
      auto_create_sessions: false

    files:
      max_file_size: 5242880
      allowed_extensions: [png, jpg, txt, md]

    notifications:
      on_completion: true

    bridge:
      log_level: DEBUG
      control_port: 8765
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_SECTIONS = ("chat", "agent", "streaming", "sessions", "files", "notifications")
_BRIDGE_KEYS = ("log_level", "control_host", "control_port")


def default_config_path() -> Path:
    """Return the default config path (~/.config/threadlink/config.yaml)."""
    return Path.home() / ".config" / "threadlink" / "config.yaml"


def _coerce(name: str, value: Any, current: Any) -> Any:
    if isinstance(value, str):
        value = os.path.expandvars(value)
    if current is None or value is None:
        return value
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            if isinstance(value, str):
                return [v.strip() for v in value.split(",") if v.strip()]
            return [str(v) for v in value]
        if isinstance(current, str):
            return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name}: cannot use {value!r}") from None
    return value


def _apply_section(target: Any, section: str, raw: Any) -> None:
    if raw is None:
        return
    if not isinstance(raw, dict):
        raise ConfigError(f"section {section!r} must be a mapping")
    known = {f.name for f in dataclasses.fields(target)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("load_yaml_config: unknown key %s.%s ignored", section, key)
            continue
        setattr(target, key, _coerce(f"{section}.{key}", value, getattr(target, key)))


def apply_yaml(config: BridgeConfig, raw: dict[str, Any]) -> BridgeConfig:
    """Overlay parsed YAML sections onto *config* in place and return it."""
    for section in _SECTIONS:
        _apply_section(getattr(config, section), section, raw.get(section))

    bridge_raw = raw.get("bridge") or {}
    if not isinstance(bridge_raw, dict):
        raise ConfigError("section 'bridge' must be a mapping")
    for key in _BRIDGE_KEYS:
        if key in bridge_raw:
            setattr(config, key, _coerce(f"bridge.{key}", bridge_raw[key], getattr(config, key)))

    unknown = sorted(set(raw) - set(_SECTIONS) - {"bridge"})
    if unknown:
        logger.warning("load_yaml_config: unknown sections ignored: %s", ", ".join(unknown))
    return config


def load_yaml_config(
    path: str | Path | None = None,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML config file over *base* (or the environment config).

    An explicitly given path must exist and parse; errors are logged and
    re-raised. With no path, the default location is used when present
    and silently skipped otherwise.
    """
    config = base if base is not None else BridgeConfig.from_env()
    explicit = path is not None
    path = Path(path) if explicit else default_config_path()
    if not explicit and not path.is_file():
        logger.debug("load_yaml_config: no config file at %s", path)
        return config

    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return apply_yaml(config, raw)
