"""gemdesk CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from gemdesk.engine.config import BridgeConfig

LOG_FILE_NAME = "gemdesk-server.log"


def configure_logging(config: BridgeConfig) -> Path:
    """Send root logging to a rotating file under data_dir/logs and stderr."""
    log_dir = config.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    # stdout is reserved for the {"port": N} handshake.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _list_sessions(config: BridgeConfig) -> None:
    from gemdesk.shared.services.persistence import SessionStore

    store = SessionStore(config.sessions_dir)
    sessions = store.load_all()
    if not sessions:
        print("No saved sessions.")
        return
    for session in sessions:
        print(f"  {session.id}  {session.name}  ({session.message_count} messages)")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="gemdesk",
        description="gemdesk: session bridge for command-line AI workers",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode (the default)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved sessions and exit",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Server bind address (default 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .gemdesk/gemdesk.yaml or gemdesk.yaml)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Directory for sessions, worker contexts and logs (default ~/.gemdesk)",
    )
    args = parser.parse_args()

    from gemdesk.engine.yaml_config import load_config

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"gemdesk: could not load config: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    if args.list:
        _list_sessions(config)
        sys.exit(0)

    from gemdesk.server.http_server import GemdeskServer

    log_file = configure_logging(config)
    logging.getLogger(__name__).info(
        "Starting gemdesk server mode cwd=%s host=%s port=%s config=%s log=%s worker=%s",
        Path.cwd(),
        config.host,
        config.port,
        args.config or "<auto>",
        log_file,
        " ".join(config.worker_argv),
    )
    server = GemdeskServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
