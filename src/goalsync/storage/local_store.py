# src/goalsync/storage/local_store.py
"""
Per-user persistent cache for goals and sync state.

LocalStore is the only owner of persisted goal state. It keeps, under a
per-user key namespace (``user_<id>_`` or ``guest_``):

- the goal list and goal statistics, each wrapped in a CacheEntry with its own TTL
- the bounded offline change log
- deletion tombstones for goals whose remote delete is still pending
- the last successful sync time, user preferences and cache metadata

Expired entries are still returned (flagged ``expired``) so callers can
fall back to them when the network is unavailable.

Failure semantics: every backend error is caught and logged here. Callers
get an empty/default value or ``False`` and carry on without a cache.

Example:
    store = LocalStore(InMemoryKeyValueStorage(), user_id="u1")
    await store.store_goals(goals, from_server=True)
    result = await store.get_goals()
    if result.cached and not result.expired:
        ...
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from pydantic.alias_generators import to_snake

from ..config.models import StorageConfig
from ..exceptions import StorageError
from ..models import (
    CacheEntry,
    ChangeType,
    Goal,
    GoalStats,
    OfflineChange,
    UserPreferences,
    parse_timestamp,
    utcnow,
)
from .backends import KeyValueStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_VERSION = 1

# Errors a backend or a corrupt payload can produce
_STORE_ERRORS = (StorageError, OSError, ValueError, TypeError)


class StorageKeys:
    GOALS = "sustainabilityGoals"
    STATS = "goalStats"
    OFFLINE_CHANGES = "offlineGoalChanges"
    LAST_SYNC = "lastGoalSync"
    PREFERENCES = "goalUserPreferences"
    CACHE_METADATA = "goalCacheMetadata"
    TOMBSTONES = "goalTombstones"

    ALL = (GOALS, STATS, OFFLINE_CHANGES, LAST_SYNC, PREFERENCES, CACHE_METADATA, TOMBSTONES)


@dataclass
class CachedResult(Generic[T]):
    """Outcome of a cached read. ``cached`` is False when nothing usable was stored."""

    data: Optional[T] = None
    cached: bool = False
    expired: bool = False
    from_server: bool = False
    timestamp: Optional[datetime] = None
    version: Optional[int] = None


@dataclass
class SyncNeeds:
    needs_sync: bool
    unsynced_changes: int = 0
    last_sync_age: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needsSync": self.needs_sync,
            "unsyncedChanges": self.unsynced_changes,
            "lastSyncAge": self.last_sync_age,
        }


class LocalStore:
    """
    Durable, user-scoped cache over a KeyValueStorage backend.

    Each logical key's read-modify-write sequence runs under its own
    ``asyncio.Lock`` so overlapping calls never observe a partial update.

    Args:
        storage: Key/value backend.
        config: Storage settings (TTLs, offline log capacity).
        user_id: Authenticated user, or None for the guest namespace.
        clock: Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        config: Optional[StorageConfig] = None,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._config = config or StorageConfig()
        self._user_id = user_id
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Namespacing
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def namespace(self) -> str:
        return f"user_{self._user_id}_" if self._user_id else "guest_"

    @property
    def max_offline_changes(self) -> int:
        return self._config.max_offline_changes

    def switch_user(self, user_id: Optional[str]) -> None:
        """Point the store at another user's namespace."""
        if user_id != self._user_id:
            logger.info("LocalStore namespace switched to %s", f"user_{user_id}_" if user_id else "guest_")
        self._user_id = user_id

    def key(self, name: str) -> str:
        return f"{self.namespace}{name}"

    def _lock_for(self, name: str) -> asyncio.Lock:
        full_key = self.key(name)
        lock = self._locks.get(full_key)
        if lock is None:
            lock = self._locks[full_key] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Raw access
    # -------------------------------------------------------------------------

    async def _read(self, name: str) -> Any:
        try:
            raw = await self._storage.get(self.key(name))
            return json.loads(raw) if raw is not None else None
        except _STORE_ERRORS as e:
            logger.error("Failed to read %s: %s", self.key(name), e)
            return None

    async def _write(self, name: str, value: Any) -> bool:
        try:
            await self._storage.set(self.key(name), json.dumps(value))
            return True
        except _STORE_ERRORS as e:
            logger.error("Failed to write %s: %s", self.key(name), e)
            return False

    async def _remove(self, name: str) -> bool:
        try:
            await self._storage.remove(self.key(name))
            return True
        except _STORE_ERRORS as e:
            logger.error("Failed to remove %s: %s", self.key(name), e)
            return False

    def _is_expired(self, timestamp: datetime, ttl_seconds: float) -> bool:
        return (self._clock() - timestamp).total_seconds() > ttl_seconds

    # -------------------------------------------------------------------------
    # Goals and stats
    # -------------------------------------------------------------------------

    async def store_goals(self, goals: Iterable[Goal], from_server: bool = False) -> bool:
        """Persist the goal list wrapped in a CacheEntry."""
        goals = list(goals)
        entry = CacheEntry[List[Goal]](
            data=goals, timestamp=self._clock(), from_server=from_server, version=CACHE_VERSION
        )
        async with self._lock_for(StorageKeys.GOALS):
            ok = await self._write(StorageKeys.GOALS, entry.to_wire())
        if ok:
            await self._update_metadata("goals", len(goals), from_server)
            logger.debug("Stored %d goals (from_server=%s)", len(goals), from_server)
        return ok

    async def get_goals(self, validate_expiry: bool = True) -> CachedResult[List[Goal]]:
        """
        Read the cached goal list.

        Returns an empty result when nothing is stored or the entry cannot be
        parsed. ``expired`` is only computed when ``validate_expiry`` is set.
        """
        async with self._lock_for(StorageKeys.GOALS):
            raw = await self._read(StorageKeys.GOALS)
        entry = self._parse_entry(raw, CacheEntry[List[Goal]], StorageKeys.GOALS)
        if entry is None:
            return CachedResult(data=[])
        expired = validate_expiry and self._is_expired(entry.timestamp, self._config.cache_ttl_seconds)
        return CachedResult(
            data=list(entry.data),
            cached=True,
            expired=expired,
            from_server=entry.from_server,
            timestamp=entry.timestamp,
            version=entry.version,
        )

    async def store_goal_stats(self, stats: GoalStats, from_server: bool = True) -> bool:
        entry = CacheEntry[GoalStats](
            data=stats, timestamp=self._clock(), from_server=from_server, version=CACHE_VERSION
        )
        async with self._lock_for(StorageKeys.STATS):
            ok = await self._write(StorageKeys.STATS, entry.to_wire())
        if ok:
            await self._update_metadata("stats", stats.total_goals, from_server)
        return ok

    async def get_goal_stats(self, validate_expiry: bool = True) -> CachedResult[GoalStats]:
        """Read cached goal statistics. Same contract as :meth:`get_goals`, own TTL."""
        async with self._lock_for(StorageKeys.STATS):
            raw = await self._read(StorageKeys.STATS)
        entry = self._parse_entry(raw, CacheEntry[GoalStats], StorageKeys.STATS)
        if entry is None:
            return CachedResult()
        expired = validate_expiry and self._is_expired(entry.timestamp, self._config.stats_ttl_seconds)
        return CachedResult(
            data=entry.data,
            cached=True,
            expired=expired,
            from_server=entry.from_server,
            timestamp=entry.timestamp,
            version=entry.version,
        )

    def _parse_entry(self, raw: Any, model: Any, name: str) -> Any:
        if raw is None:
            return None
        try:
            entry = model.model_validate(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable cache entry %s: %s", self.key(name), e)
            return None
        if entry.version != CACHE_VERSION:
            logger.info("Ignoring cache entry %s with version %s", self.key(name), entry.version)
            return None
        return entry

    async def _update_metadata(self, section: str, count: int, from_server: bool) -> None:
        async with self._lock_for(StorageKeys.CACHE_METADATA):
            metadata = await self._read(StorageKeys.CACHE_METADATA)
            if not isinstance(metadata, dict):
                metadata = {}
            metadata[section] = {
                "timestamp": self._clock().isoformat(),
                "count": count,
                "fromServer": from_server,
            }
            await self._write(StorageKeys.CACHE_METADATA, metadata)

    # -------------------------------------------------------------------------
    # Offline change log
    # -------------------------------------------------------------------------

    async def _load_changes(self) -> List[OfflineChange]:
        raw = await self._read(StorageKeys.OFFLINE_CHANGES)
        if not isinstance(raw, list):
            return []
        changes = []
        for item in raw:
            try:
                changes.append(OfflineChange.model_validate(item))
            except ValueError as e:
                logger.warning("Dropping unreadable offline change: %s", e)
        return changes

    async def _save_changes(self, changes: List[OfflineChange]) -> bool:
        return await self._write(StorageKeys.OFFLINE_CHANGES, [c.to_wire() for c in changes])

    async def record_offline_change(
        self,
        change_type: ChangeType | str,
        payload: Optional[Dict[str, Any]] = None,
        goal_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Append a mutation to the offline change log.

        The log is a bounded FIFO queue: once it holds ``max_offline_changes``
        entries, the oldest are evicted to make room.

        Returns:
            The new change id, or None if it could not be persisted
        """
        change = OfflineChange(
            id=f"change_{uuid.uuid4().hex}",
            type=ChangeType(change_type),
            goal_id=goal_id,
            payload=dict(payload or {}),
            timestamp=self._clock(),
        )
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            changes = await self._load_changes()
            changes.append(change)
            overflow = len(changes) - self._config.max_offline_changes
            if overflow > 0:
                evicted = changes[:overflow]
                changes = changes[overflow:]
                logger.warning(
                    "Offline change log full; evicted %d oldest change(s): %s",
                    overflow,
                    ", ".join(c.id for c in evicted),
                )
            ok = await self._save_changes(changes)

        if not ok:
            return None
        logger.debug("Recorded offline %s change %s for goal %s", change.type.value, change.id, goal_id)
        return change.id

    async def get_offline_changes(self) -> List[OfflineChange]:
        """All logged changes, oldest first, synced or not."""
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            return await self._load_changes()

    async def get_unsynced_changes(self) -> List[OfflineChange]:
        return [c for c in await self.get_offline_changes() if not c.synced]

    async def mark_changes_synced(self, change_ids: Iterable[str]) -> bool:
        ids = set(change_ids)
        if not ids:
            return True
        now = self._clock()
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            changes = await self._load_changes()
            updated = [
                c.model_copy(update={"synced": True, "synced_at": now}) if c.id in ids and not c.synced else c
                for c in changes
            ]
            return await self._save_changes(updated)

    async def clear_synced_changes(self) -> int:
        """Drop synced changes from the log. Returns the number removed."""
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            changes = await self._load_changes()
            remaining = [c for c in changes if not c.synced]
            removed = len(changes) - len(remaining)
            if removed and not await self._save_changes(remaining):
                return 0
        if removed:
            logger.debug("Cleared %d synced offline change(s)", removed)
        return removed

    async def discard_changes_for_goal(self, goal_id: str) -> int:
        """Drop unsynced changes that target ``goal_id``. Returns the number removed."""
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            changes = await self._load_changes()
            remaining = [c for c in changes if c.synced or c.goal_id != goal_id]
            removed = len(changes) - len(remaining)
            if removed and not await self._save_changes(remaining):
                return 0
        return removed

    async def remap_goal_id(self, old_id: str, new_id: str) -> int:
        """Point unsynced changes at a goal's new id. Returns the number updated."""
        async with self._lock_for(StorageKeys.OFFLINE_CHANGES):
            changes = await self._load_changes()
            count = 0
            updated = []
            for c in changes:
                if not c.synced and c.goal_id == old_id:
                    c = c.model_copy(update={"goal_id": new_id})
                    count += 1
                updated.append(c)
            if count and not await self._save_changes(updated):
                return 0
        return count

    # -------------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------------

    async def get_tombstones(self) -> List[str]:
        async with self._lock_for(StorageKeys.TOMBSTONES):
            raw = await self._read(StorageKeys.TOMBSTONES)
        return [str(i) for i in raw] if isinstance(raw, list) else []

    async def add_tombstone(self, goal_id: str) -> bool:
        """Remember a locally deleted goal until its remote delete succeeds."""
        async with self._lock_for(StorageKeys.TOMBSTONES):
            raw = await self._read(StorageKeys.TOMBSTONES)
            tombstones = [str(i) for i in raw] if isinstance(raw, list) else []
            if goal_id in tombstones:
                return True
            tombstones.append(goal_id)
            return await self._write(StorageKeys.TOMBSTONES, tombstones)

    async def remove_tombstones(self, goal_ids: Iterable[str]) -> bool:
        doomed = set(goal_ids)
        async with self._lock_for(StorageKeys.TOMBSTONES):
            raw = await self._read(StorageKeys.TOMBSTONES)
            tombstones = [str(i) for i in raw] if isinstance(raw, list) else []
            remaining = [i for i in tombstones if i not in doomed]
            if len(remaining) == len(tombstones):
                return True
            return await self._write(StorageKeys.TOMBSTONES, remaining)

    # -------------------------------------------------------------------------
    # Sync metadata
    # -------------------------------------------------------------------------

    async def get_last_sync(self) -> Optional[datetime]:
        raw = await self._read(StorageKeys.LAST_SYNC)
        if isinstance(raw, dict):
            return parse_timestamp(raw.get("timestamp"))
        return None

    async def update_last_sync(self, when: Optional[datetime] = None) -> bool:
        when = when or self._clock()
        return await self._write(StorageKeys.LAST_SYNC, {"timestamp": when.isoformat()})

    async def needs_sync(self, max_age_seconds: float = 1800.0) -> SyncNeeds:
        """
        Decide whether a sync pass is due.

        True when there was never a sync, the last one is older than
        ``max_age_seconds``, or any unsynced change is waiting.
        """
        last_sync = await self.get_last_sync()
        unsynced = len(await self.get_unsynced_changes())
        age = (self._clock() - last_sync).total_seconds() if last_sync else None
        needed = last_sync is None or age > max_age_seconds or unsynced > 0
        return SyncNeeds(needs_sync=needed, unsynced_changes=unsynced, last_sync_age=age)

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    async def store_user_preferences(self, preferences: UserPreferences | Dict[str, Any]) -> bool:
        """Persist preferences. A dict is merged over the stored values (camel or snake keys)."""
        if isinstance(preferences, dict):
            current = await self.get_user_preferences()
            update = {to_snake(k): v for k, v in preferences.items()}
            preferences = UserPreferences.model_validate({**current.model_dump(), **update})
        async with self._lock_for(StorageKeys.PREFERENCES):
            return await self._write(StorageKeys.PREFERENCES, preferences.to_wire())

    async def get_user_preferences(self) -> UserPreferences:
        """Stored preferences merged over the defaults."""
        async with self._lock_for(StorageKeys.PREFERENCES):
            raw = await self._read(StorageKeys.PREFERENCES)
        if not isinstance(raw, dict):
            return UserPreferences()
        try:
            return UserPreferences.model_validate(raw)
        except ValueError as e:
            logger.warning("Ignoring unreadable preferences: %s", e)
            return UserPreferences()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def _namespace_keys(self) -> List[str]:
        try:
            keys = await self._storage.get_all_keys()
        except _STORE_ERRORS as e:
            logger.error("Failed to list storage keys: %s", e)
            return []
        return [k for k in keys if k.startswith(self.namespace)]

    async def clear_cache(self) -> bool:
        """Remove every key in the current namespace."""
        keys = await self._namespace_keys()
        if not keys:
            return True
        try:
            await self._storage.multi_remove(keys)
        except _STORE_ERRORS as e:
            logger.error("Failed to clear cache for %s: %s", self.namespace, e)
            return False
        logger.info("Cleared %d cached key(s) for %s", len(keys), self.namespace)
        return True

    async def get_cache_info(self) -> Dict[str, Any]:
        """Sizes and counts of the cached data in the current namespace."""
        sizes: Dict[str, int] = {}
        for full_key in await self._namespace_keys():
            try:
                raw = await self._storage.get(full_key)
            except _STORE_ERRORS as e:
                logger.error("Failed to read %s: %s", full_key, e)
                continue
            sizes[full_key[len(self.namespace):]] = len(raw.encode("utf-8")) if raw else 0

        goals = await self.get_goals()
        changes = await self.get_offline_changes()
        last_sync = await self.get_last_sync()
        metadata = await self._read(StorageKeys.CACHE_METADATA)
        return {
            "namespace": self.namespace,
            "keys": sizes,
            "totalSize": sum(sizes.values()),
            "goalsCount": len(goals.data or []),
            "goalsExpired": goals.expired,
            "offlineChanges": len(changes),
            "unsyncedChanges": sum(1 for c in changes if not c.synced),
            "lastSync": last_sync.isoformat() if last_sync else None,
            "metadata": metadata if isinstance(metadata, dict) else {},
        }

    async def get_debug_info(self) -> Dict[str, Any]:
        info = await self.get_cache_info()
        info.update(
            {
                "userId": self._user_id,
                "backend": type(self._storage).__name__,
                "cacheTtlSeconds": self._config.cache_ttl_seconds,
                "statsTtlSeconds": self._config.stats_ttl_seconds,
                "maxOfflineChanges": self._config.max_offline_changes,
                "tombstones": await self.get_tombstones(),
                "preferences": (await self.get_user_preferences()).to_wire(),
            }
        )
        return info

    async def close(self) -> None:
        try:
            await self._storage.close()
        except _STORE_ERRORS as e:
            logger.error("Failed to close storage backend: %s", e)
