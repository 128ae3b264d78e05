# src/goalsync/storage/__init__.py
"""Persistent key/value backends and the per-user LocalStore."""

from .backends import (
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorage,
    SqliteKeyValueStorage,
    create_storage,
)
from .local_store import CachedResult, LocalStore, StorageKeys, SyncNeeds

__all__ = [
    "CachedResult",
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "KeyValueStorage",
    "LocalStore",
    "SqliteKeyValueStorage",
    "StorageKeys",
    "SyncNeeds",
    "create_storage",
]
