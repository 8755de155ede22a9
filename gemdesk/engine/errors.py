"""Exception hierarchy for the session bridge.

Specific exceptions for each failure mode the transport needs to
tell apart. Worker failures are reported as bridge events, not raised.
"""
from __future__ import annotations


class GemdeskError(Exception):
    """Base exception for all gemdesk errors."""


class InvalidSessionIdError(GemdeskError):
    """Session id is not usable as a storage key."""
    def __init__(self, session_id: object):
        self.session_id = session_id
        super().__init__(f"Invalid session id: {session_id!r}")


class SessionNotFoundError(GemdeskError):
    """No durable record exists for the session id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class StaleSessionError(GemdeskError):
    """A whole-record save was based on an outdated version."""
    def __init__(self, session_id: str, expected: int, actual: int):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Session {session_id} was saved from version {expected} "
            f"but the stored version is {actual}"
        )


class InvocationInProgressError(GemdeskError):
    """A worker invocation for this session has not finished yet."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} already has a running invocation"
        )


class WorkerSpawnError(GemdeskError):
    """The worker process could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")
