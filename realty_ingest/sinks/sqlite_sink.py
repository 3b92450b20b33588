"""Persist listings to SQLite with upsert semantics."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock

from ..engine.mapper import ListingRecord
from ..errors import SinkError
from ..infra.storage import SQLiteManager
from .base import BaseSink

_UPSERT = """
INSERT INTO listings(source_id, external_id, location_id, category_id, discovered_at, payload)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(source_id, external_id) DO UPDATE SET
    location_id = excluded.location_id,
    category_id = excluded.category_id,
    payload = excluded.payload
"""


class SQLiteSink(BaseSink):
    """Store each record as a JSON payload row keyed by ``(source_id, external_id)``."""

    def __init__(self, path: Path, manager: SQLiteManager | None = None, source_id: int = 2) -> None:
        self.path = path
        self.source_id = source_id
        self.manager = manager or SQLiteManager()
        self._lock = Lock()
        self._conn = self.manager.connect(path)

    def ingest(self, record: ListingRecord) -> None:
        row = (
            record.source_id,
            record.external_id,
            record.location_id,
            record.category_id,
            record.discovered_at,
            json.dumps(record.to_dict(), ensure_ascii=False),
        )
        with self._lock:
            try:
                self._conn.execute(_UPSERT, row)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise SinkError(f"SQLite write failed for {record.external_id}: {exc}") from exc

    def known_ids(self, location_id: int, category_id: int, since_days: int = 30) -> list[str]:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=since_days)).isoformat(timespec="seconds")
        with self._lock:
            cur = self._conn.execute(
                "SELECT external_id FROM listings WHERE source_id = ? AND location_id = ? "
                "AND category_id = ? AND discovered_at >= ?",
                (self.source_id, location_id, category_id, cutoff),
            )
            return [row["external_id"] for row in cur.fetchall()]

    def get(self, external_id: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT payload FROM listings WHERE source_id = ? AND external_id = ?",
                (self.source_id, external_id),
            )
            row = cur.fetchone()
        return json.loads(row["payload"]) if row else None

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM listings").fetchone()[0]

    def reconnect(self) -> None:
        with self._lock:
            self._conn = self.manager.reconnect(self.path)

    def flush(self) -> None:
        with self._lock:
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
        self.manager.close_all()


__all__ = ["SQLiteSink"]
