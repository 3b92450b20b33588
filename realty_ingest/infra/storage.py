"""SQLite connection management for the listings store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS listings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id INTEGER NOT NULL,
                external_id TEXT NOT NULL,
                location_id INTEGER NOT NULL,
                category_id INTEGER NOT NULL,
                discovered_at TEXT NOT NULL,
                payload TEXT NOT NULL,
                UNIQUE (source_id, external_id)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_listings_segment "
            "ON listings(location_id, category_id, discovered_at)"
        )
        conn.commit()

    def reconnect(self, path: Path) -> sqlite3.Connection:
        with self._lock:
            conn = self._connections.pop(path, None)
        if conn is not None:
            conn.close()
        return self.connect(path)

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["SQLiteManager"]
