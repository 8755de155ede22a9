"""Adapters package - Bridge between engine and transport.

This package contains the session controller, event bus, and event
types that connect the process bridge and session store to the HTTP
server. The controller is imported from its module directly:

    from gemdesk.adapters.controller import SessionController
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "BridgeEvent",
    "dict_to_event",
    "event_to_dict",
]

from gemdesk.adapters.event_bus import EventBus
from gemdesk.adapters.events import BridgeEvent, dict_to_event, event_to_dict
