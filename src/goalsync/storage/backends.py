# src/goalsync/storage/backends.py
"""
Key/value storage backends for LocalStore.

Backends store opaque string values under string keys and are namespaced by
the caller. Three implementations are provided:

- ``InMemoryKeyValueStorage``: process-local dict, for tests and guests
- ``JsonFileKeyValueStorage``: single JSON file, atomic write-to-temp-then-rename
- ``SqliteKeyValueStorage``: SQLite table via aiosqlite

Every backend raises :class:`~goalsync.exceptions.StorageError` when the
underlying medium fails; LocalStore is responsible for degrading gracefully.

Example::

    storage = create_storage(StorageConfig(backend="sqlite", path="/tmp/goals.db"))
    await storage.set("guest_sustainabilityGoals", "[]")
    raw = await storage.get("guest_sustainabilityGoals")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

import aiosqlite

from ..config.models import StorageConfig
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStorage(Protocol):
    """Protocol for persistent key/value storage backends."""

    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str) -> None: ...
    async def remove(self, key: str) -> None: ...
    async def get_all_keys(self) -> List[str]: ...
    async def multi_remove(self, keys: Iterable[str]) -> None: ...
    async def close(self) -> None: ...


# =============================================================================
# In-memory
# =============================================================================


class InMemoryKeyValueStorage:
    """Dict-backed storage. Contents are lost when the process exits."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def get_all_keys(self) -> List[str]:
        return list(self._data.keys())

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def close(self) -> None:
        pass


# =============================================================================
# JSON file
# =============================================================================


class JsonFileKeyValueStorage:
    """
    Single-file JSON storage.

    The whole mapping is loaded lazily on first access and rewritten on every
    mutation. Writes go to a temporary file that replaces the target, so a
    crash mid-write leaves the previous contents intact.

    Args:
        path: Path to the JSON file.
    """

    def __init__(self, path: str | Path = "~/.local/share/goalsync/store.json") -> None:
        self._path = Path(os.path.expanduser(str(path)))
        self._data: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        if self._data is not None:
            return self._data
        if not self._path.exists():
            self._data = {}
            return self._data
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read {self._path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise StorageError(f"Unexpected content in {self._path}: expected an object")
        self._data = {str(k): str(v) for k, v in loaded.items()}
        logger.debug("Loaded %d keys from %s", len(self._data), self._path)
        return self._data

    def _write_all(self, data: Dict[str, str]) -> None:
        """Atomically write the mapping to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write {self._path}: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = dict(self._load())
            data[key] = value
            self._write_all(data)
            self._data = data

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key not in data:
                return
            data = {k: v for k, v in data.items() if k != key}
            self._write_all(data)
            self._data = data

    async def get_all_keys(self) -> List[str]:
        async with self._lock:
            return list(self._load().keys())

    async def multi_remove(self, keys: Iterable[str]) -> None:
        doomed = set(keys)
        async with self._lock:
            data = self._load()
            if not doomed & data.keys():
                return
            data = {k: v for k, v in data.items() if k not in doomed}
            self._write_all(data)
            self._data = data

    async def close(self) -> None:
        self._data = None


# =============================================================================
# SQLite
# =============================================================================


class SqliteKeyValueStorage:
    """
    SQLite-backed storage using aiosqlite for non-blocking I/O.

    The connection is opened lazily. Each mutation is committed on its own,
    so every key write is atomic.

    Args:
        db_path: Path to the database file, or ``:memory:``.
    """

    def __init__(self, db_path: str = "~/.local/share/goalsync/store.db") -> None:
        self._db_path = db_path if db_path == ":memory:" else os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL DEFAULT (julianday('now'))
            )
            """
        )
        await self._db.commit()
        logger.debug("SQLite key/value store opened at %s", self._db_path)
        return self._db

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            try:
                db = await self._connection()
                async with db.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cur:
                    row = await cur.fetchone()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"SQLite read failed for {key}: {exc}") from exc
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            try:
                db = await self._connection()
                await db.execute(
                    "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = julianday('now')",
                    (key, value),
                )
                await db.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"SQLite write failed for {key}: {exc}") from exc

    async def remove(self, key: str) -> None:
        async with self._lock:
            try:
                db = await self._connection()
                await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                await db.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"SQLite delete failed for {key}: {exc}") from exc

    async def get_all_keys(self) -> List[str]:
        async with self._lock:
            try:
                db = await self._connection()
                async with db.execute("SELECT key FROM kv_store ORDER BY key") as cur:
                    rows = await cur.fetchall()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"SQLite key listing failed: {exc}") from exc
        return [row[0] for row in rows]

    async def multi_remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        async with self._lock:
            try:
                db = await self._connection()
                await db.executemany("DELETE FROM kv_store WHERE key = ?", [(k,) for k in keys])
                await db.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StorageError(f"SQLite delete failed: {exc}") from exc

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None


# =============================================================================
# Factory
# =============================================================================


def create_storage(config: Optional[StorageConfig] = None) -> KeyValueStorage:
    """Create the key/value backend selected by ``config.backend``."""
    config = config or StorageConfig()
    if config.backend == "memory":
        return InMemoryKeyValueStorage()
    if config.backend == "sqlite":
        return SqliteKeyValueStorage(config.path)
    return JsonFileKeyValueStorage(config.path)


__all__ = [
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "KeyValueStorage",
    "SqliteKeyValueStorage",
    "create_storage",
]
