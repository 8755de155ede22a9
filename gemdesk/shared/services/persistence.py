"""Session persistence: save and load sessions to disk.

Storage layout:
    {data_dir}/sessions/{session_id}.json

Each record is the full Session serialized as indented JSON:

    {"id": ..., "name": ..., "history": [{"type": "command", "content": ...}],
     "created_at": ..., "updated_at": ..., "version": 3}

Writes are whole-record replaces done through a temp file and an atomic
rename. ``version`` is bumped on every save and can be checked by callers
that replace a record from a possibly stale copy.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from gemdesk.engine.errors import InvalidSessionIdError, StaleSessionError
from gemdesk.shared.models.session import (
    Session,
    default_session_name,
    is_valid_session_id,
    new_session_id,
)
from gemdesk.shared.services.durable_write import replacing, unlink_durable

logger = logging.getLogger(__name__)


class SessionStore:
    """Durable CRUD over Session records, one JSON file per session."""

    def __init__(self, sessions_dir: Path) -> None:
        self._dir = Path(sessions_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        # Guards the version check + write in save().
        self._write_lock = threading.Lock()

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    def path_for(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(session_id)
        return self._dir / f"{session_id}.json"

    def create(self, name: str | None = None) -> Session:
        """Allocate a new id and durably write an empty session."""
        session_id = new_session_id()
        while (self._dir / f"{session_id}.json").exists():
            session_id = new_session_id()
        session = Session(id=session_id, name=name or default_session_name())
        self.save(session)
        logger.info("Session created id=%s name=%r", session.id, session.name)
        return session

    def _read(self, path: Path) -> Session:
        data = json.loads(path.read_text(encoding="utf-8"))
        session = Session.from_dict(data)
        if session.id != path.stem:
            raise ValueError(f"record id {session.id!r} does not match file name")
        return session

    def load_one(self, session_id: str) -> Session | None:
        """Return the stored session, or None if absent, malformed, or unreadable."""
        if not is_valid_session_id(session_id):
            logger.debug("load_one: rejecting malformed id %r", session_id)
            return None
        path = self._dir / f"{session_id}.json"
        try:
            return self._read(path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load session %s from %s: %s", session_id, path, exc)
            return None

    def load_all(self) -> list[Session]:
        """Load every readable session, oldest first.

        Malformed or unreadable records are logged and skipped.
        """
        sessions: list[Session] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                sessions.append(self._read(path))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable session record %s: %s", path, exc)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        sessions.sort(key=lambda s: (s.created_at or epoch, s.id))
        return sessions

    def exists(self, session_id: str) -> bool:
        return is_valid_session_id(session_id) and (self._dir / f"{session_id}.json").exists()

    def list_sessions(self) -> list[str]:
        """List stored session ids."""
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def save(self, session: Session, expected_version: int | None = None) -> Path:
        """Replace the stored record with *session*.

        When *expected_version* is given, the write is refused if the stored
        record's version differs (another writer got there first).

        On success, ``session.version`` and ``session.updated_at`` are updated
        in place.

        Raises:
            InvalidSessionIdError: if the session id is not a safe file stem.
            StaleSessionError: if *expected_version* does not match.
            OSError: if the record cannot be written.
        """
        path = self.path_for(session.id)
        with self._write_lock:
            stored_version = self._stored_version(path)
            if expected_version is not None and expected_version != stored_version:
                raise StaleSessionError(session.id, expected_version, stored_version)

            new_version = stored_version + 1
            updated_at = datetime.now(timezone.utc)
            data = session.to_dict()
            data["version"] = new_version
            data["updated_at"] = updated_at.isoformat()
            with replacing(path) as f:
                json.dump(data, f, indent=2, ensure_ascii=False)

            session.version = new_version
            session.updated_at = updated_at
        logger.debug(
            "Session saved id=%s version=%d messages=%d",
            session.id, new_version, session.message_count,
        )
        return path

    def _stored_version(self, path: Path) -> int:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as exc:
            logger.warning("Overwriting unreadable session record %s: %s", path, exc)
            return 0
        try:
            return int(data.get("version") or 0) if isinstance(data, dict) else 0
        except (TypeError, ValueError):
            return 0

    def rename(self, session_id: str, name: str) -> Session | None:
        session = self.load_one(session_id)
        if session is None:
            return None
        session.name = name
        self.save(session)
        logger.info("Session renamed id=%s name=%r", session_id, name)
        return session

    def delete(self, session_id: str) -> bool:
        """Delete a stored session. Returns False if there was nothing to delete."""
        if not is_valid_session_id(session_id):
            return False
        with self._write_lock:
            deleted = unlink_durable(self._dir / f"{session_id}.json")
        if deleted:
            logger.info("Session deleted id=%s", session_id)
        return deleted
