"""TTL-bounded SQLite cache for authoritative detail lookups."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

_TABLE_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
DAY_SECONDS = 24 * 60 * 60


class DetailCache:
    """Key/value JSON cache whose rows expire ``ttl_days`` after writing.

    Expired rows are deleted lazily on read.
    """

    def __init__(self, db_path: Path, ttl_days: int = 30, table: str = "detail_cache"):
        if not _TABLE_RE.match(table):
            raise ValueError(f"Invalid cache table name: {table!r}")
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = max(1, int(ttl_days)) * DAY_SECONDS
        self.table = table
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._conn:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )

    def get(self, key: str, now: Optional[float] = None) -> Optional[Any]:
        current = time.time() if now is None else now
        with self._lock:
            row = self._conn.execute(
                f"SELECT value_json, created_at FROM {self.table} WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            value_json, created_at = row
            if current - created_at > self.ttl_seconds:
                with self._conn:
                    self._conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
                return None
        try:
            return json.loads(value_json)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Dropping unreadable cache entry %s", key)
            self.delete(key)
            return None

    def set(self, key: str, value: Any, now: Optional[float] = None) -> None:
        created = int(time.time() if now is None else now)
        payload = json.dumps(value, ensure_ascii=False, sort_keys=True)
        with self._lock, self._conn:
            self._conn.execute(
                f"""
                INSERT INTO {self.table} (key, value_json, created_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, created_at = excluded.created_at
                """,
                (key, payload, created),
            )

    def delete(self, key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))

    def close(self) -> None:
        with self._lock:
            self._conn.close()
