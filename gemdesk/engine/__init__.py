"""gemdesk engine: per-session worker processes and their configuration."""
from .config import BridgeConfig, EventCallback, fire_event
from .errors import (
    GemdeskError,
    InvalidSessionIdError,
    InvocationInProgressError,
    SessionNotFoundError,
    StaleSessionError,
    WorkerSpawnError,
)

__all__ = [
    # Process bridge (lazy import)
    "ProcessBridge",
    "Invocation",
    "InvocationState",
    # Config
    "BridgeConfig",
    "EventCallback",
    "fire_event",
    # YAML config (lazy import)
    "load_config",
    "load_yaml_config",
    # Errors
    "GemdeskError",
    "InvalidSessionIdError",
    "InvocationInProgressError",
    "SessionNotFoundError",
    "StaleSessionError",
    "WorkerSpawnError",
]


def __getattr__(name: str):
    if name in ("ProcessBridge", "Invocation", "InvocationState"):
        from . import process_bridge
        return getattr(process_bridge, name)
    if name in ("load_config", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
