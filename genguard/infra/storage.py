"""Key-value collaborators backing the checkpoint store and result cache."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal byte-oriented store; expiry is enforced by its consumers."""

    def get(self, key: str) -> bytes | None:
        """Return the stored bytes or ``None`` when absent."""

    def set(self, key: str, value: bytes) -> None:
        """Create or overwrite ``key``."""

    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""


class MemoryKeyValueStore:
    """Process-local store used by default and in tests."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


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
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                updated_at TEXT
            )
            """
        )
        conn.commit()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


class SQLiteKeyValueStore:
    """Durable key-value store on top of a single SQLite table."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self._lock = Lock()
        self._conn = self.manager.connect(db_path)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return bytes(row["value"])

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store(key, value, updated_at) VALUES (?, ?, datetime('now'))",
                (key, sqlite3.Binary(value)),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self._conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ORDER BY key", (f"{prefix}%",)
            ).fetchall()
        return [row["key"] for row in rows]

    def reset(self) -> None:
        self.manager.reset(self.db_path)
        self._conn = self.manager.connect(self.db_path)


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SQLiteKeyValueStore", "SQLiteManager"]
