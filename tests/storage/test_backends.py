# tests/storage/test_backends.py
"""
Tests for the key/value storage backends.

Each backend must satisfy the same contract, so the contract tests run
against all three; backend-specific behavior is tested separately.
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from goalsync.config.models import StorageConfig
from goalsync.exceptions import StorageError
from goalsync.storage.backends import (
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorage,
    SqliteKeyValueStorage,
    create_storage,
)


@pytest.fixture(params=["memory", "json", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        return InMemoryKeyValueStorage()
    if request.param == "json":
        return JsonFileKeyValueStorage(tmp_path / "store.json")
    return SqliteKeyValueStorage(str(tmp_path / "store.db"))


# =============================================================================
# Contract
# =============================================================================


class TestBackendContract:
    """Behavior shared by every backend."""

    def test_satisfies_protocol(self, backend):
        assert isinstance(backend, KeyValueStorage)

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, backend):
        assert await backend.get("nope") is None
        await backend.close()

    @pytest.mark.asyncio
    async def test_set_get_overwrite(self, backend):
        await backend.set("k", "v1")
        await backend.set("k", "v2")
        assert await backend.get("k") == "v2"
        await backend.close()

    @pytest.mark.asyncio
    async def test_remove(self, backend):
        await backend.set("k", "v")
        await backend.remove("k")
        await backend.remove("never-set")
        assert await backend.get("k") is None
        await backend.close()

    @pytest.mark.asyncio
    async def test_keys_and_multi_remove(self, backend):
        for key in ("user_1_a", "user_1_b", "guest_a"):
            await backend.set(key, "x")

        assert sorted(await backend.get_all_keys()) == ["guest_a", "user_1_a", "user_1_b"]

        await backend.multi_remove(["user_1_a", "user_1_b", "missing"])
        assert await backend.get_all_keys() == ["guest_a"]
        await backend.close()


# =============================================================================
# JSON file
# =============================================================================


class TestJsonFileStorage:
    """Tests specific to JsonFileKeyValueStorage."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        first = JsonFileKeyValueStorage(path)
        await first.set("guest_goals", "[]")

        second = JsonFileKeyValueStorage(path)
        assert await second.get("guest_goals") == "[]"
        assert json.loads(path.read_text()) == {"guest_goals": "[]"}

    @pytest.mark.asyncio
    async def test_no_temp_file_left_behind(self, tmp_path):
        storage = JsonFileKeyValueStorage(tmp_path / "store.json")
        await storage.set("a", "1")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["store.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_storage_error(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        storage = JsonFileKeyValueStorage(path)
        with pytest.raises(StorageError):
            await storage.get("a")

    @pytest.mark.asyncio
    async def test_non_object_document_raises_storage_error(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]")
        with pytest.raises(StorageError):
            await JsonFileKeyValueStorage(path).get_all_keys()

    @pytest.mark.asyncio
    async def test_empty_file_is_empty_store(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("")
        assert await JsonFileKeyValueStorage(path).get_all_keys() == []


# =============================================================================
# SQLite
# =============================================================================


class TestSqliteStorage:
    """Tests specific to SqliteKeyValueStorage."""

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        db_path = str(tmp_path / "store.db")
        first = SqliteKeyValueStorage(db_path)
        await first.set("k", "v")
        await first.close()

        second = SqliteKeyValueStorage(db_path)
        assert await second.get("k") == "v"
        await second.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        storage = SqliteKeyValueStorage(":memory:")
        await storage.set("k", "v")
        assert await storage.get_all_keys() == ["k"]
        await storage.close()


class TestCreateStorage:
    """Tests for the backend factory."""

    def test_selects_backend(self, tmp_path):
        assert isinstance(create_storage(StorageConfig(backend="memory")), InMemoryKeyValueStorage)
        sqlite = create_storage(StorageConfig(backend="sqlite", path=str(tmp_path / "s.db")))
        assert isinstance(sqlite, SqliteKeyValueStorage)
        json_backend = create_storage(StorageConfig(backend="json", path=str(tmp_path / "s.json")))
        assert isinstance(json_backend, JsonFileKeyValueStorage)
        assert json_backend.path == tmp_path / "s.json"
