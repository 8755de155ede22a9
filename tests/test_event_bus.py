from __future__ import annotations

import asyncio

import pytest

from gemdesk.adapters.event_bus import EventBus
from gemdesk.adapters.events import (
    BridgeEvent,
    ErrorOutput,
    InvocationClosed,
    OutputChunk,
    dict_to_event,
    event_to_dict,
)


def test_dict_to_event_picks_type_and_ignores_unknown_fields() -> None:
    event = dict_to_event({
        "type": "data",
        "session_id": "s1",
        "invocation_id": "abcd1234",
        "content": "hi",
        "extra": "ignored",
    })
    assert isinstance(event, OutputChunk)
    assert event.content == "hi"

    assert isinstance(dict_to_event({"type": "error", "content": "x"}), ErrorOutput)
    assert type(dict_to_event({"type": "mystery"})) is BridgeEvent


def test_close_event_keeps_null_code() -> None:
    event = InvocationClosed(session_id="s1", invocation_id="i1", code=None, signal=9)
    data = event_to_dict(event)
    assert data == {
        "type": "close",
        "session_id": "s1",
        "invocation_id": "i1",
        "code": None,
        "signal": 9,
    }


def test_output_event_omits_missing_message() -> None:
    data = event_to_dict(OutputChunk(session_id="s1", content="x"))
    assert "message" not in data


@pytest.mark.asyncio
async def test_callback_events_are_consumed_in_order():
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"type": "data", "session_id": "s1", "content": "A"})
    await callback({"type": "data", "session_id": "s1", "content": "B"})
    await callback({"type": "close", "session_id": "s1", "code": 0})

    received = []
    async for event in bus.consume():
        received.append(event)
        if len(received) == 3:
            bus.close()

    assert [e.type for e in received] == ["data", "data", "close"]
    assert "".join(e.content for e in received[:2]) == "AB"


@pytest.mark.asyncio
async def test_closed_bus_ignores_new_events():
    bus = EventBus()
    bus.close()
    await bus.emit(OutputChunk(session_id="s1", content="late"))
    assert bus.qsize() == 0


@pytest.mark.asyncio
async def test_full_queue_drops_after_timeout(caplog):
    bus = EventBus(maxsize=1, put_timeout=0.05)
    await bus.emit(OutputChunk(session_id="s1", content="first"))
    with caplog.at_level("ERROR"):
        await asyncio.wait_for(bus.emit(OutputChunk(session_id="s1", content="second")), timeout=2)
    assert bus.qsize() == 1
    assert "dropping" in caplog.text
