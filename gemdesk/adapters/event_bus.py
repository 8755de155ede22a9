"""Async event bus bridging controller callbacks to transport consumers.

The controller relays bridge events via callback. The EventBus queues
them for the server's SSE fan-out loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from gemdesk.adapters.events import BridgeEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging controller callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass as the controller's event_callback."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for SessionController."""
        return self._callback

    async def emit(self, event: BridgeEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping, up to put_timeout.
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s session=%s (queue size: %d)",
                self._put_timeout, event.type, event.session_id, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[BridgeEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
