"""Session controller: glue between the transport, the store and the bridge.

Every mutation is a read-modify-write against the SessionStore done
under a per-session asyncio.Lock, with the blocking file I/O pushed to
a worker thread. Bridge output is appended to the transcript of the
session named in the event and then forwarded downstream (usually an
EventBus feeding the SSE fan-out).
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from gemdesk.adapters.events import CLOSE, DATA, ERROR
from gemdesk.engine.config import EventCallback, fire_event
from gemdesk.engine.errors import (
    InvalidSessionIdError,
    InvocationInProgressError,
    SessionNotFoundError,
)
from gemdesk.engine.process_bridge import Invocation, ProcessBridge
from gemdesk.shared.models.message import Message, MessageKind
from gemdesk.shared.models.session import Session, is_valid_session_id
from gemdesk.shared.services.persistence import SessionStore

logger = logging.getLogger(__name__)

_KIND_FOR_EVENT = {
    DATA: MessageKind.RESPONSE,
    ERROR: MessageKind.ERROR,
}


class SessionController:
    """Validates commands, drives the bridge, and records its output."""

    def __init__(
        self,
        store: SessionStore,
        bridge: ProcessBridge,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._event_callback = event_callback
        self._locks: dict[str, asyncio.Lock] = {}
        bridge.set_event_callback(self.on_bridge_event)

    @property
    def bridge(self) -> ProcessBridge:
        return self._bridge

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's lock; forget it once the record is gone."""
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(session_id)
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            if not lock.locked() and self._locks.get(session_id) is lock:
                if not await asyncio.to_thread(self._store.exists, session_id):
                    del self._locks[session_id]

    # ── Store operations ──

    async def create_session(self, name: str | None = None) -> Session:
        return await asyncio.to_thread(self._store.create, name)

    async def load_all(self) -> list[Session]:
        return await asyncio.to_thread(self._store.load_all)

    async def load_one(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._store.load_one, session_id)

    async def save_session(self, session: Session, expected_version: int) -> Session:
        """Replace the stored record with *session* (whole-record save).

        *expected_version* is the version the caller's copy was read at;
        0 only matches when no record exists yet.

        Raises:
            InvalidSessionIdError: if the session id is not a safe file stem.
            StaleSessionError: if *expected_version* no longer matches.
        """
        if isinstance(expected_version, bool) or not isinstance(expected_version, int):
            raise TypeError("expected_version must be an int")
        async with self._session_lock(session.id):
            await asyncio.to_thread(self._store.save, session, expected_version)
        return session

    async def delete_session(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        async with self._session_lock(session_id):
            deleted = await asyncio.to_thread(self._store.delete, session_id)
        if deleted and self._bridge.is_running(session_id):
            logger.info(
                "Session %s deleted with a live invocation; its output will be dropped",
                session_id,
            )
        return deleted

    async def rename_session(self, session_id: str, name: str) -> Session | None:
        if not is_valid_session_id(session_id):
            return None
        async with self._session_lock(session_id):
            return await asyncio.to_thread(self._store.rename, session_id, name)

    # ── Commands ──

    async def submit(self, session_id: str, text: str) -> tuple[Invocation, Message]:
        """Record *text* as a command and start a worker for it.

        Returns once the worker has been queued; its output arrives through
        on_bridge_event.

        Raises:
            ValueError: if *text* is empty or whitespace.
            SessionNotFoundError: if no session record exists.
            InvocationInProgressError: if the session's previous command
                is still running.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValueError("command must be a non-empty string")
        if not is_valid_session_id(session_id):
            raise SessionNotFoundError(session_id)

        async with self._session_lock(session_id):
            if self._bridge.is_running(session_id):
                raise InvocationInProgressError(session_id)
            session = await asyncio.to_thread(self._store.load_one, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            message = session.add_message(MessageKind.COMMAND, text)
            await asyncio.to_thread(self._store.save, session)
            invocation = await self._bridge.spawn(session_id, text)

        logger.info(
            "Command submitted session=%s invocation=%s len=%d",
            session_id, invocation.id, len(text),
        )
        return invocation, message

    async def on_bridge_event(self, event: dict[str, Any]) -> None:
        """Record a bridge event in its session and forward it downstream."""
        session_id = event.get("session_id", "")
        event_type = event.get("type")

        current = self._bridge.get_invocation(session_id)
        if current is None or current.id != event.get("invocation_id"):
            logger.warning(
                "Dropping %s event for session=%s from unknown invocation %s",
                event_type, session_id, event.get("invocation_id"),
            )
            return

        forwarded = dict(event)
        kind = _KIND_FOR_EVENT.get(event_type)
        if kind is not None:
            message = await self._append(session_id, kind, event.get("content", ""))
            if message is None:
                return
            forwarded["message"] = message.to_dict()
        elif event_type == CLOSE:
            if not await asyncio.to_thread(self._store.exists, session_id):
                logger.debug("Dropping close event for deleted session %s", session_id)
                return

        await fire_event(self._event_callback, forwarded)

    async def _append(
        self, session_id: str, kind: MessageKind, content: str,
    ) -> Message | None:
        async with self._session_lock(session_id):
            session = await asyncio.to_thread(self._store.load_one, session_id)
            if session is None:
                logger.debug(
                    "Dropping %s output for deleted session %s", kind.value, session_id,
                )
                return None
            message = session.add_message(kind, content)
            await asyncio.to_thread(self._store.save, session)
        return message

    # ── Status ──

    async def status(self, session_id: str) -> dict[str, Any]:
        """Invocation state for the session.

        Raises:
            SessionNotFoundError: if no session record exists.
        """
        if not await asyncio.to_thread(self._store.exists, session_id):
            raise SessionNotFoundError(session_id)
        invocation = self._bridge.get_invocation(session_id)
        if invocation is None:
            return {
                "session_id": session_id,
                "state": "idle",
                "running": False,
                "code": None,
            }
        return invocation.to_dict()
