"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GEMDESK_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async callback for bridge and session events.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set; callback errors are logged, not raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception(
            "Event callback failed for %s (session=%s)",
            event.get("type"), event.get("session_id"),
        )


def default_data_dir() -> Path:
    return Path.home() / ".gemdesk"


@dataclass
class BridgeConfig:
    """Session bridge configuration."""

    # Root for sessions/, contexts/ and logs/.
    data_dir: Path = field(default_factory=default_data_dir)

    # Worker invocation: `npx gemini -c` continues the previous
    # conversation held in the working directory.
    worker_command: str = "npx"
    worker_args: list[str] = field(default_factory=lambda: ["gemini", "-c"])
    # Extra environment for the worker, merged over os.environ.
    worker_env: dict[str, str] = field(default_factory=dict)

    # Max bytes per read from worker stdout/stderr.
    read_chunk_size: int = 4096
    # How long shutdown() waits for live workers before terminating them.
    shutdown_grace_seconds: float = 5.0

    # Server
    host: str = "127.0.0.1"
    port: int = 0

    # Logging
    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return Path(self.data_dir) / "sessions"

    @property
    def contexts_dir(self) -> Path:
        return Path(self.data_dir) / "contexts"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @property
    def worker_argv(self) -> list[str]:
        return [self.worker_command, *self.worker_args]

    @classmethod
    def from_env(cls, base: BridgeConfig | None = None) -> BridgeConfig:
        """Apply GEMDESK_* environment variables on top of *base*."""
        config = base if base is not None else cls()
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("GEMDESK_")
        }
        if env_vars:
            logger.info(
                "BridgeConfig.from_env: GEMDESK_* env overrides: %s",
                ", ".join(sorted(env_vars)),
            )
        else:
            logger.debug("BridgeConfig.from_env: no GEMDESK_* env vars set")

        if os.getenv("GEMDESK_DATA_DIR"):
            config.data_dir = Path(os.environ["GEMDESK_DATA_DIR"]).expanduser()
        if os.getenv("GEMDESK_WORKER_COMMAND"):
            config.worker_command = os.environ["GEMDESK_WORKER_COMMAND"]
        if "GEMDESK_WORKER_ARGS" in os.environ:
            config.worker_args = shlex.split(os.environ["GEMDESK_WORKER_ARGS"])
        config.read_chunk_size = int(os.getenv(
            "GEMDESK_READ_CHUNK_SIZE", str(config.read_chunk_size)
        ))
        config.shutdown_grace_seconds = float(os.getenv(
            "GEMDESK_SHUTDOWN_GRACE", str(config.shutdown_grace_seconds)
        ))
        config.host = os.getenv("GEMDESK_HOST", config.host)
        config.port = int(os.getenv("GEMDESK_PORT", str(config.port)))
        config.log_level = os.getenv("GEMDESK_LOG_LEVEL", config.log_level).upper()

        if config.read_chunk_size <= 0:
            raise ValueError("read_chunk_size must be > 0")

        logger.info(
            "BridgeConfig: data_dir=%s worker=%s log_level=%s",
            config.data_dir, " ".join(config.worker_argv), config.log_level,
        )
        return config
