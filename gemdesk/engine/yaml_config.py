"""YAML configuration loader.

Loads a single YAML file on top of the BridgeConfig defaults. GEMDESK_*
environment variables are applied afterwards and win over the file.

Example YAML:
    bridge:
      data_dir: ~/.gemdesk
      worker_command: npx
      worker_args: [gemini, -c]
      worker_env:
        GEMINI_API_KEY: "${GEMINI_API_KEY}"
      read_chunk_size: 4096
      shutdown_grace_seconds: 5

    server:
      host: 127.0.0.1
      port: 0
      log_level: INFO
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = (
    Path(".gemdesk") / "gemdesk.yaml",
    Path("gemdesk.yaml"),
)


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Return the first existing config candidate under *cwd*, if any."""
    root = Path(cwd) if cwd is not None else Path.cwd()
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        logger.debug("Config auto-discovery candidate: %s (exists=%s)", path, path.exists())
        if path.is_file():
            logger.info("Auto-discovered config: %s", path)
            return path
    logger.info(
        "No config file found (tried %s); using defaults",
        ", ".join(str(root / c) for c in CONFIG_CANDIDATES),
    )
    return None


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' section must be a mapping, got {type(value).__name__}")
    return value


def load_yaml_config(path: str | Path) -> BridgeConfig:
    """Load and parse a YAML config file into a BridgeConfig.

    Environment references (``${VAR}``) in ``worker_env`` values and
    ``~`` in ``data_dir`` are expanded.

    Raises:
        FileNotFoundError: if *path* does not exist.
        yaml.YAMLError: if the file is not valid YAML.
        ValueError: if a section has the wrong shape.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    bridge_raw = _section(raw, "bridge")
    server_raw = _section(raw, "server")
    defaults = BridgeConfig()

    worker_args = bridge_raw.get("worker_args", defaults.worker_args)
    if isinstance(worker_args, str):
        worker_args = worker_args.split()

    worker_env_raw = bridge_raw.get("worker_env") or {}
    if not isinstance(worker_env_raw, dict):
        raise ValueError("bridge.worker_env must be a mapping")

    data_dir = bridge_raw.get("data_dir")
    return BridgeConfig(
        data_dir=Path(os.path.expanduser(str(data_dir))) if data_dir else defaults.data_dir,
        worker_command=str(bridge_raw.get("worker_command", defaults.worker_command)),
        worker_args=[str(a) for a in worker_args],
        worker_env={
            str(k): os.path.expandvars(str(v)) for k, v in worker_env_raw.items()
        },
        read_chunk_size=int(bridge_raw.get("read_chunk_size", defaults.read_chunk_size)),
        shutdown_grace_seconds=float(bridge_raw.get(
            "shutdown_grace_seconds", defaults.shutdown_grace_seconds,
        )),
        host=str(server_raw.get("host", defaults.host)),
        port=int(server_raw.get("port", defaults.port)),
        log_level=str(server_raw.get("log_level", defaults.log_level)).upper(),
    )


def load_config(
    config_path: str | Path | None = None,
    cwd: Path | None = None,
) -> BridgeConfig:
    """Resolve the effective config: YAML file (explicit or discovered), then env."""
    path = Path(config_path) if config_path else discover_config_path(cwd)
    base = load_yaml_config(path) if path is not None else BridgeConfig()
    return BridgeConfig.from_env(base)
