"""
Persistence Adapters — key/value storage behind the pattern store and the
decision coordinator.

Behavioral Contract:
- get(keys) returns only the keys that exist
- set(mapping) overwrites each key with a JSON-serializable value
- remove(keys) ignores keys that do not exist
- Every call is asynchronous and may fail; callers treat failures as
  best-effort and keep their in-memory state authoritative
"""

import asyncio
import json
import sqlite3
import threading
from typing import Any, Dict, Iterable, Optional, Protocol

PATTERNS_KEY = "learningPatterns"
PENDING_DECISIONS_KEY = "pendingDecisions"
USER_DECISIONS_KEY = "userDecisions"


class PersistenceAdapter(Protocol):
    """Protocol for engine storage — pluggable backend."""

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]: ...

    async def set(self, mapping: Dict[str, Any]) -> None: ...

    async def remove(self, keys: Iterable[str]) -> None: ...


class InMemoryPersistenceAdapter:
    """
    Dictionary-backed adapter. Values are copied through JSON on the way in
    and out so callers never share mutable state with the adapter.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value, default=str)

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {
            key: json.loads(self._data[key])
            for key in keys
            if key in self._data
        }

    async def set(self, mapping: Dict[str, Any]) -> None:
        for key, value in mapping.items():
            self._data[key] = json.dumps(value, default=str)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def keys(self) -> list:
        return list(self._data.keys())


class SQLitePersistenceAdapter:
    """
    Durable adapter over a single key/value table.
    Blocking sqlite calls run in a worker thread; a lock serializes access
    to the shared connection.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the storage table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS engine_state (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.commit()

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get, list(keys))

    async def set(self, mapping: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._set, dict(mapping))

    async def remove(self, keys: Iterable[str]) -> None:
        await asyncio.to_thread(self._remove, list(keys))

    def _get(self, keys: list) -> Dict[str, Any]:
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT key, value_json FROM engine_state WHERE key IN ({placeholders})",
                keys,
            ).fetchall()
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def _set(self, mapping: Dict[str, Any]) -> None:
        rows = [
            (key, json.dumps(value, default=str))
            for key, value in mapping.items()
        ]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO engine_state (key, value_json, updated_at)
                VALUES (?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            self._conn.commit()

    def _remove(self, keys: list) -> None:
        with self._lock:
            self._conn.executemany(
                "DELETE FROM engine_state WHERE key = ?",
                [(key,) for key in keys],
            )
            self._conn.commit()

    def count(self) -> int:
        """Number of stored keys."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) as cnt FROM engine_state"
            ).fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
