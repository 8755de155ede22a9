"""Session state: display name, ordered transcript, and version stamp."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from gemdesk.shared.models.message import Message, MessageKind

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return str(uuid.uuid4())


def default_session_name(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return f"Session {stamp}"


def is_valid_session_id(session_id: Any) -> bool:
    """Whether *session_id* is safe to use as a file stem and directory name."""
    return (
        isinstance(session_id, str)
        and len(session_id) <= 128
        and _SESSION_ID_RE.match(session_id) is not None
    )


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Session:
    """Holds the conversation state for one session."""

    id: str = field(default_factory=new_session_id)
    name: str = field(default_factory=default_session_name)
    history: list[Message] = field(default_factory=list)
    created_at: datetime | None = field(default_factory=_utcnow)
    updated_at: datetime | None = None
    # Incremented by the store on every successful save.
    version: int = 0

    def add_message(self, kind: MessageKind, content: str) -> Message:
        msg = Message(kind=kind, content=content, timestamp=_utcnow())
        self.history.append(msg)
        return msg

    @property
    def message_count(self) -> int:
        return len(self.history)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "history": [m.to_dict() for m in self.history],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Build a Session from its serialized form.

        Accepts the minimal ``{id, name, history}`` shape as well; missing
        timestamps stay ``None`` and the version starts at 0.

        Raises:
            ValueError: if the id is missing or unsafe, or a message is
                malformed.
        """
        if not isinstance(data, dict):
            raise ValueError("session record must be a JSON object")
        session_id = data.get("id")
        if not is_valid_session_id(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        history = data.get("history") or []
        if not isinstance(history, list):
            raise ValueError("history must be a list")
        try:
            version = int(data.get("version") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid version: {data.get('version')!r}") from exc
        return cls(
            id=session_id,
            name=str(data.get("name") or session_id),
            history=[Message.from_dict(m) for m in history],
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
            version=version,
        )
