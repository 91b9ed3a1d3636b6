from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Protocol
from uuid import uuid4

from pydantic import ValidationError

from landedcost.models import QuoteDraft, QuoteMode

logger = logging.getLogger(__name__)


def _default_path() -> Path:
    base = Path(os.getenv("LC_DATA_ROOT", "."))
    return base / "data" / "quote_drafts.jsonl"


def _canonical_json(payload: object) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StaleDraftError(RuntimeError):
    """A concurrent turn saved the draft first."""

    def __init__(self, session_id: str, expected: int, actual: int):
        super().__init__(f"draft {session_id} is at version {actual}, expected {expected}")
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class SessionBusyError(RuntimeError):
    """Another turn for the same session holds the lock."""


def new_draft(session_id: str | None = None, mode: QuoteMode = "quote") -> QuoteDraft:
    """An unsaved draft at version 0."""

    now = _now()
    return QuoteDraft(session_id=session_id or uuid4().hex, mode=mode, created_at=now, updated_at=now)


class DraftStore:
    """Thread-safe JSONL-backed store of quote drafts with versioned writes."""

    def __init__(self, path: Path | None = None):
        self.path = path or _default_path()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._records: Dict[str, QuoteDraft] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with self._lock:
            with self.path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    try:
                        record = QuoteDraft(**json.loads(line))
                    except (json.JSONDecodeError, ValidationError) as exc:
                        logger.warning("Skipping unreadable draft line in %s: %s", self.path, exc)
                        continue
                    self._records[record.session_id] = record

    def _persist(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for record in self._iter_sorted():
                handle.write(_canonical_json(record.serializable_dict()) + "\n")
        os.replace(tmp_path, self.path)

    def _iter_sorted(self) -> Iterable[QuoteDraft]:
        return sorted(self._records.values(), key=lambda rec: rec.session_id)

    def get(self, session_id: str) -> Optional[QuoteDraft]:
        with self._lock:
            record = self._records.get(session_id)
            return record.model_copy(deep=True) if record else None

    def save(self, draft: QuoteDraft, expected_version: int) -> QuoteDraft:
        """Compare-and-swap write: succeeds only if the stored version still matches."""

        with self._lock:
            current = self._records.get(draft.session_id)
            actual = current.version if current else 0
            if actual != expected_version:
                raise StaleDraftError(draft.session_id, expected_version, actual)
            stored = draft.model_copy(
                deep=True,
                update={"version": expected_version + 1, "updated_at": _now()},
            )
            self._records[stored.session_id] = stored
            self._persist()
            return stored.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            if self._records.pop(session_id, None) is None:
                return False
            self._persist()
            return True

    def list(self) -> list[QuoteDraft]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._iter_sorted()]


class SessionLockProvider(Protocol):
    def hold(self, session_id: str, timeout: float = 30.0) -> Iterator[None]:
        ...


class SessionLocks:
    """In-process per-session mutual exclusion."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str, timeout: float = 30.0) -> Iterator[None]:
        lock = self._lock_for(session_id)
        if not lock.acquire(timeout=timeout):
            raise SessionBusyError(session_id)
        try:
            yield
        finally:
            lock.release()
