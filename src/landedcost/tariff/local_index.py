"""SQLite full-text index of tariff codes seen so far.

The index grows as a side effect of authoritative lookups: every search
result and detail page is upserted here, so later classifications can
offer candidates without a network round trip.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from landedcost.tariff.codes import UNKNOWN_CODE, fold_text, normalize_code, normalize_heading

logger = logging.getLogger(__name__)

MIN_LIMIT = 5
MAX_LIMIT = 50
DEFAULT_LIMIT = 12
MAX_QUERY_TOKENS = 10


@dataclass(frozen=True)
class IndexEntry:
    code: str
    label: Optional[str] = None
    breadcrumbs: Sequence[str] = field(default_factory=tuple)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def build_match_query(query: str) -> Optional[str]:
    """Turn free text into an FTS5 prefix query (``tok1* tok2*``)."""

    tokens: List[str] = []
    for token in fold_text(query).split():
        if len(token) < 3 or token in tokens:
            continue
        tokens.append(token)
        if len(tokens) >= MAX_QUERY_TOKENS:
            break
    if not tokens:
        return None
    return " ".join(f"{token}*" for token in tokens)


class LocalTariffIndex:
    """Thread-safe FTS5 index over ``(code, label, breadcrumbs)``."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        _ensure_parent(self.db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tariff_codes (
                    code TEXT PRIMARY KEY,
                    label TEXT,
                    breadcrumbs TEXT,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS tariff_codes_fts USING fts5(
                    code, label, breadcrumbs,
                    content='tariff_codes', content_rowid='rowid',
                    tokenize='unicode61 remove_diacritics 2'
                )
                """
            )
            self._conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS tariff_codes_ai AFTER INSERT ON tariff_codes BEGIN
                    INSERT INTO tariff_codes_fts(rowid, code, label, breadcrumbs)
                    VALUES (new.rowid, new.code, new.label, new.breadcrumbs);
                END
                """
            )
            self._conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS tariff_codes_ad AFTER DELETE ON tariff_codes BEGIN
                    INSERT INTO tariff_codes_fts(tariff_codes_fts, rowid, code, label, breadcrumbs)
                    VALUES ('delete', old.rowid, old.code, old.label, old.breadcrumbs);
                END
                """
            )
            self._conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS tariff_codes_au AFTER UPDATE ON tariff_codes BEGIN
                    INSERT INTO tariff_codes_fts(tariff_codes_fts, rowid, code, label, breadcrumbs)
                    VALUES ('delete', old.rowid, old.code, old.label, old.breadcrumbs);
                    INSERT INTO tariff_codes_fts(rowid, code, label, breadcrumbs)
                    VALUES (new.rowid, new.code, new.label, new.breadcrumbs);
                END
                """
            )

    def upsert(self, entries: Iterable[IndexEntry]) -> int:
        """Store or refresh entries; returns how many rows were written."""

        now = int(time.time() * 1000)
        rows = []
        for entry in entries:
            code = normalize_code(entry.code)
            if not code or code == UNKNOWN_CODE:
                continue
            label = (entry.label or "").strip() or None
            crumbs = [c.strip() for c in entry.breadcrumbs or () if c and c.strip()]
            rows.append((code, label, json.dumps(crumbs, ensure_ascii=False) if crumbs else None, now))
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO tariff_codes (code, label, breadcrumbs, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    label = COALESCE(excluded.label, tariff_codes.label),
                    breadcrumbs = COALESCE(excluded.breadcrumbs, tariff_codes.breadcrumbs),
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def search(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        heading_filter: Optional[str] = None,
    ) -> List[IndexEntry]:
        match = build_match_query(query)
        if not match:
            return []
        limit = max(MIN_LIMIT, min(MAX_LIMIT, int(limit or DEFAULT_LIMIT)))
        heading = normalize_heading(heading_filter) if heading_filter else None

        sql = """
            SELECT t.code, t.label, t.breadcrumbs
            FROM tariff_codes_fts f
            JOIN tariff_codes t ON t.rowid = f.rowid
            WHERE tariff_codes_fts MATCH ?
        """
        params: list = [match]
        if heading:
            sql += " AND t.code LIKE ?"
            params.append(f"{heading}.%")
        sql += " ORDER BY t.updated_at DESC, t.rowid DESC LIMIT ?"
        params.append(limit)

        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Local tariff index search failed for %r: %s", query, exc)
            return []

        results: List[IndexEntry] = []
        for row in rows:
            if row["code"] == UNKNOWN_CODE:
                continue
            crumbs = json.loads(row["breadcrumbs"]) if row["breadcrumbs"] else []
            results.append(IndexEntry(code=row["code"], label=row["label"], breadcrumbs=tuple(crumbs)))
        return results

    def get(self, code: str) -> Optional[IndexEntry]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT code, label, breadcrumbs FROM tariff_codes WHERE code = ?", (normalized,)
            ).fetchone()
        if row is None:
            return None
        crumbs = json.loads(row["breadcrumbs"]) if row["breadcrumbs"] else []
        return IndexEntry(code=row["code"], label=row["label"], breadcrumbs=tuple(crumbs))

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM tariff_codes").fetchone()[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
