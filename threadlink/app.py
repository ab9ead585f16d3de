"""threadlink CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_STATUS_STYLES = {
    "active": "green",
    "disconnected": "yellow",
    "ended": "dim",
    "orphaned": "red",
}


def _configure_logging(level_name: str) -> Path:
    """Root logger: rotating file under ~/.threadlink/logs plus stderr."""
    log_dir = Path.home() / ".threadlink" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "threadlink.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    # aiohttp access lines duplicate the control API's own request log
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def _run(args) -> int:
    import yaml

    from threadlink.engine.config import BridgeConfig
    from threadlink.engine.errors import ConfigError
    from threadlink.engine.yaml_config import load_yaml_config

    log_level = "DEBUG" if args.verbose else os.getenv("THREADLINK_LOG_LEVEL", "INFO")
    log_file = _configure_logging(log_level)
    logger = logging.getLogger(__name__)

    try:
        config = load_yaml_config(args.config, BridgeConfig.from_env())
        if args.port is not None:
            config.control_port = args.port
        if not args.verbose:
            logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
        config.validate()
    except (ConfigError, OSError, yaml.YAMLError) as exc:
        logger.error("Invalid configuration: %s", exc)
        print(f"threadlink: {exc}", file=sys.stderr)
        return 2

    logger.info(
        "Starting threadlink chat=%s agent=%s control=%s:%d log=%s",
        config.chat.url, config.agent.base_url,
        config.control_host, config.control_port, log_file,
    )

    from threadlink.engine.bridge import Bridge
    from threadlink.server import ControlServer

    server = ControlServer(Bridge(config), host=config.control_host, port=config.control_port)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


def _mappings(args) -> int:
    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    from threadlink.engine.mapping_store import MappingStore
    from threadlink.shared.formatting import format_relative_time

    store = MappingStore(path=args.path) if args.path else MappingStore()
    mappings = store.load()
    if args.status:
        mappings = [m for m in mappings if m.status.value == args.status]

    console = Console()
    if not mappings:
        console.print(f"No mappings in {store.path}")
        return 0

    table = Table(title=f"Thread mappings ({store.path})")
    table.add_column("Session", no_wrap=True)
    table.add_column("Project")
    table.add_column("Status")
    table.add_column("Thread", no_wrap=True)
    table.add_column("Model")
    table.add_column("Last activity")
    for mapping in sorted(mappings, key=lambda m: m.last_activity_at, reverse=True):
        table.add_row(
            mapping.short_id,
            mapping.project_name,
            Text(mapping.status.value, style=_STATUS_STYLES.get(mapping.status.value, "")),
            mapping.thread_root_post_id[:8],
            str(mapping.selected_model) if mapping.selected_model else "-",
            format_relative_time(mapping.last_activity_at),
        )
    console.print(table)
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="threadlink",
        description="threadlink - drive coding-agent sessions from chat threads",
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Start the bridge and the control API")
    run.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.config/threadlink/config.yaml if present)",
    )
    run.add_argument(
        "--port", type=int, default=None,
        help="Control API port (overrides config)",
    )
    run.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )

    mappings = sub.add_parser("mappings", help="Show persisted thread mappings")
    mappings.add_argument("--path", metavar="PATH", help="Mapping file to read")
    mappings.add_argument(
        "--status", choices=sorted(_STATUS_STYLES),
        help="Only show mappings with this status",
    )

    args = parser.parse_args()
    if args.command == "run":
        sys.exit(_run(args))
    if args.command == "mappings":
        sys.exit(_mappings(args))
    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
