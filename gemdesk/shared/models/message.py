"""Transcript message model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(Enum):
    COMMAND = "command"
    RESPONSE = "response"
    ERROR = "error"


@dataclass(frozen=True)
class Message:
    kind: MessageKind
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        # "type" matches the key used by records written before the rename
        return {
            "type": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        if not isinstance(data, dict):
            raise ValueError("message must be a JSON object")
        raw_kind = data.get("type", data.get("kind"))
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError(f"message content must be a string, got {type(content).__name__}")
        timestamp = data.get("timestamp")
        if timestamp:
            if not isinstance(timestamp, str):
                raise ValueError(f"invalid timestamp: {timestamp!r}")
            dt = datetime.fromisoformat(timestamp)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return cls(kind=MessageKind(raw_kind), content=content, timestamp=dt)
        return cls(kind=MessageKind(raw_kind), content=content)
