"""Event types emitted by the process bridge.

Each event corresponds to a bridge callback dict, parsed into a typed
dataclass for safe consumption by the controller and transport.

Wire shape (one per event):
    {"session_id": ..., "invocation_id": ..., "type": "data", "content": ...}
    {"session_id": ..., "invocation_id": ..., "type": "error", "content": ...}
    {"session_id": ..., "invocation_id": ..., "type": "close", "code": 0}
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DATA = "data"
ERROR = "error"
CLOSE = "close"


@dataclass
class BridgeEvent:
    """Base event from the process bridge."""
    type: str = ""
    session_id: str = ""
    invocation_id: str = ""


@dataclass
class OutputChunk(BridgeEvent):
    """A chunk read from the worker's stdout."""
    type: str = DATA
    content: str = ""
    # Transcript message appended for this chunk, when the controller stored one.
    message: dict[str, Any] | None = None


@dataclass
class ErrorOutput(BridgeEvent):
    """A chunk read from the worker's stderr, or a bridge diagnostic."""
    type: str = ERROR
    content: str = ""
    message: dict[str, Any] | None = None


@dataclass
class InvocationClosed(BridgeEvent):
    """The worker exited. ``code`` is None when it died from a signal."""
    type: str = CLOSE
    code: int | None = None
    signal: int | None = None


_EVENT_MAP: dict[str, type[BridgeEvent]] = {
    DATA: OutputChunk,
    ERROR: ErrorOutput,
    CLOSE: InvocationClosed,
}


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None or f == "code":
            d[f] = val
    return d


def dict_to_event(data: dict[str, Any]) -> BridgeEvent:
    """Convert a bridge callback dict to a typed event dataclass."""
    cls = _EVENT_MAP.get(data.get("type", ""), BridgeEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return cls(**filtered)
