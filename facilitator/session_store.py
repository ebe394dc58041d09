"""
session_store.py -- Durable session persistence.

One JSON document per session, named {sessionId}.json. Writes land in a
temporary file first and are moved into place with os.replace, so a crash
mid-write leaves the previous document intact.

CachedSessionStore is a write-through front: reads hit memory first and
fall back to disk, every write goes to disk before the cache is updated.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from facilitator.errors import DuplicateSessionError, InvalidSessionIdError, PersistenceError
from facilitator.models import SessionRecord, utcnow

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*_week\d+_\d+$")
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*$")


def validate_session_id(session_id: str) -> str:
    """Reject ids that could escape the sessions directory."""
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
        raise InvalidSessionIdError(str(session_id))
    return session_id


def is_valid_user_id(user_id: str) -> bool:
    return isinstance(user_id, str) and bool(USER_ID_PATTERN.match(user_id)) and "_week" not in user_id


class SessionStore(Protocol):
    def create(self, record: SessionRecord) -> SessionRecord: ...
    def get(self, session_id: str) -> Optional[SessionRecord]: ...
    def find_latest_by_user_week(self, user_id: str, week: int) -> Optional[SessionRecord]: ...
    def save(self, record: SessionRecord) -> SessionRecord: ...
    def list_by_user(self, user_id: str) -> list[SessionRecord]: ...


class JsonFileSessionStore:
    """Flat-file store under a single directory."""

    def __init__(self, directory: Path, clock: Callable[[], datetime] = utcnow) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{validate_session_id(session_id)}.json"

    def _write(self, record: SessionRecord) -> None:
        path = self._path(record.session_id)
        payload = json.dumps(record.to_document(), ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise PersistenceError(f"Failed to write session {record.session_id}: {exc}") from exc

    def _read(self, path: Path) -> Optional[SessionRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {path.name}: {exc}") from exc
        except json.JSONDecodeError as exc:
            logger.error("Corrupt session document %s: %s", path.name, exc)
            return None
        try:
            return SessionRecord.model_validate(data)
        except PydanticValidationError as exc:
            logger.error("Invalid session document %s: %s", path.name, exc)
            return None

    def create(self, record: SessionRecord) -> SessionRecord:
        if self._path(record.session_id).exists():
            raise DuplicateSessionError(record.session_id)
        return self.save(record)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._read(self._path(session_id))

    def save(self, record: SessionRecord) -> SessionRecord:
        record.last_saved_at = self._clock()
        self._write(record)
        return record

    def _session_ids(self, prefix: str) -> list[str]:
        try:
            names = os.listdir(self.directory)
        except OSError as exc:
            raise PersistenceError(f"Failed to list sessions: {exc}") from exc
        return [
            n[: -len(".json")]
            for n in names
            if n.startswith(prefix) and n.endswith(".json")
        ]

    def find_latest_by_user_week(self, user_id: str, week: int) -> Optional[SessionRecord]:
        if not is_valid_user_id(user_id):
            return None
        candidates = self._session_ids(f"{user_id}_week{week}_")
        # Suffixes are fixed-width epoch millis, so the lexicographic max is the newest.
        for session_id in sorted(candidates, reverse=True):
            record = self.get(session_id)
            if record is not None:
                return record
        return None

    def list_by_user(self, user_id: str) -> list[SessionRecord]:
        if not is_valid_user_id(user_id):
            return []
        records: list[SessionRecord] = []
        for session_id in self._session_ids(f"{user_id}_week"):
            record = self.get(session_id)
            if record is not None and record.user_id == user_id:
                records.append(record)
        records.sort(key=lambda r: (r.week, r.created_at))
        return records


class CachedSessionStore:
    """Write-through memory cache in front of a durable store."""

    def __init__(self, backing: SessionStore) -> None:
        self.backing = backing
        self._cache: dict[str, SessionRecord] = {}

    def create(self, record: SessionRecord) -> SessionRecord:
        if record.session_id in self._cache:
            raise DuplicateSessionError(record.session_id)
        self.backing.create(record)
        self._cache[record.session_id] = record
        return record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached
        record = self.backing.get(session_id)
        if record is not None:
            self._cache[session_id] = record
        return record

    def save(self, record: SessionRecord) -> SessionRecord:
        self.backing.save(record)
        self._cache[record.session_id] = record
        return record

    def find_latest_by_user_week(self, user_id: str, week: int) -> Optional[SessionRecord]:
        found = self.backing.find_latest_by_user_week(user_id, week)
        if found is None:
            return None
        # Prefer the live object so callers never hold two copies of one session.
        return self._cache.setdefault(found.session_id, found)

    def list_by_user(self, user_id: str) -> list[SessionRecord]:
        return [self._cache.setdefault(r.session_id, r) for r in self.backing.list_by_user(user_id)]

    def evict(self, session_id: str) -> None:
        self._cache.pop(session_id, None)
