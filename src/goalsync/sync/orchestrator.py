# src/goalsync/sync/orchestrator.py
"""
Offline-first synchronization of goals with the remote authority.

State machine per session::

    idle --(trigger)--> syncing --> idle
                         syncing --> error --(retry or next trigger)--> syncing

Reachability is an overlay: while offline no remote call is attempted,
mutations go to the offline change log and are applied to the cached goal
list immediately.

A sync pass:
    1. drains unsynced offline changes in FIFO order (a failed change stays
       queued and the rest continue)
    2. pulls the authoritative goal list and statistics
    3. reconciles with the cached list through the ConflictResolver
    4. persists the result, records the sync time, clears synced changes

Only one pass runs at a time. A trigger that arrives while a pass is in
flight returns immediately with ``reason="already_syncing"``.

Network and auth failures never escape: they set state ``error``, emit
``syncError`` and the last good snapshot keeps being served. While started,
a transient failure is retried up to ``max_retries`` times with exponential
backoff (2 s, 4 s, 8 s by default) through a one-shot scheduler job; after
that the periodic sync job takes over. Auth failures pause automatic sync
until :meth:`SyncOrchestrator.set_token` is called.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic.alias_generators import to_snake

from ..config.models import SyncConfig
from ..events import EventBus, EventType
from ..exceptions import AuthError, RemoteError, TransientNetworkError
from ..logging_config import log_display
from ..models import TEMP_ID_PREFIX, ChangeType, Goal, GoalStats, OfflineChange, utcnow
from ..progress.calculator import compute_goal_stats
from ..storage.local_store import LocalStore
from .conflict_resolver import ConflictRecord, ConflictResolver
from .connectivity import NetworkMonitor
from .remote import ApiResult, RemoteGoalAPI, call_remote
from .scheduler import PeriodicScheduler, ScheduledJob

logger = logging.getLogger(__name__)

SYNC_JOB_NAME = "goal_sync"
RETRY_JOB_NAME = "goal_sync_retry"

# Client errors that will fail again on retry
_NON_RETRYABLE_STATUS = frozenset({400, 404, 409, 410, 422})


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class DrainReport:
    """Outcome of pushing the offline change log."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_change_ids: List[str] = field(default_factory=list)
    id_map: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failedChangeIds": list(self.failed_change_ids),
            "idMap": dict(self.id_map),
        }


@dataclass
class SyncResult:
    success: bool
    reason: Optional[str] = None
    goals: List[Goal] = field(default_factory=list)
    conflicts: List[ConflictRecord] = field(default_factory=list)
    drain: Optional[DrainReport] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class MutationResult:
    """
    Outcome of a goal create/update/delete.

    ``queued`` is True when the change went to the offline log instead of
    the remote API.
    """

    success: bool
    goal: Optional[Goal] = None
    queued: bool = False
    change_id: Optional[str] = None
    error: Optional[str] = None


def _goal_from_payload(data: Any) -> Optional[Goal]:
    if isinstance(data, dict) and isinstance(data.get("goal"), dict):
        data = data["goal"]
    if not isinstance(data, dict):
        return None
    try:
        return Goal.model_validate(data)
    except ValueError as e:
        logger.warning("Ignoring malformed goal from server: %s", e)
        return None


def _goals_from_payload(data: Any) -> List[Goal]:
    if isinstance(data, dict):
        data = data.get("goals", [])
    if not isinstance(data, list):
        return []
    goals = []
    for item in data:
        goal = _goal_from_payload(item)
        if goal is not None:
            goals.append(goal)
    return goals


def _stats_from_payload(data: Any) -> Optional[GoalStats]:
    if isinstance(data, dict) and isinstance(data.get("stats"), dict):
        data = data["stats"]
    if not isinstance(data, dict):
        return None
    try:
        return GoalStats.model_validate(data)
    except ValueError as e:
        logger.warning("Ignoring malformed goal stats from server: %s", e)
        return None


class SyncOrchestrator:
    """
    Owns online/offline handling, the offline queue drain and server pulls.

    Args:
        store: Per-user LocalStore.
        remote: Remote goal API implementation.
        events: Event bus for sync and offline-change events.
        network: Reachability source; a new always-online monitor if omitted.
        config: Sync settings.
        token: Session token passed to every remote call.
        scheduler: Scheduler for the periodic sync job. When omitted the
            orchestrator creates and runs its own.
        resolver: ConflictResolver instance.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteGoalAPI,
        events: Optional[EventBus] = None,
        network: Optional[NetworkMonitor] = None,
        config: Optional[SyncConfig] = None,
        token: Optional[str] = None,
        scheduler: Optional[PeriodicScheduler] = None,
        resolver: Optional[ConflictResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._remote = remote
        self._events = events or EventBus()
        self._network = network or NetworkMonitor(online=True)
        self._config = config or SyncConfig()
        self._token = token
        self._resolver = resolver or ConflictResolver()
        self._clock = clock

        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or PeriodicScheduler()

        self._state = SyncState.IDLE
        self._sync_lock = asyncio.Lock()
        self._auth_paused = False
        self._last_error: Optional[str] = None
        self._last_result: Optional[SyncResult] = None
        self._last_conflicts: List[ConflictRecord] = []
        self._unsubscribe_network: Optional[Callable[[], None]] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._retry_attempts = 0
        self._started = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._network.is_online

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def auth_paused(self) -> bool:
        return self._auth_paused

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def last_conflicts(self) -> List[ConflictRecord]:
        return list(self._last_conflicts)

    @property
    def network(self) -> NetworkMonitor:
        return self._network

    @property
    def events(self) -> EventBus:
        return self._events

    def set_token(self, token: Optional[str]) -> None:
        """Replace the session token and lift an auth pause."""
        self._token = token
        if self._auth_paused:
            logger.info("New token supplied; automatic sync resumed")
        self._auth_paused = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to reachability changes and register the periodic sync job."""
        if self._started:
            return
        self._started = True
        self._unsubscribe_network = self._network.subscribe(self._on_network_change)
        self._scheduler.register(
            ScheduledJob(
                name=SYNC_JOB_NAME,
                callback=self._scheduled_sync,
                interval=timedelta(seconds=self._config.interval_seconds),
                run_immediately=True,
                max_consecutive_errors=self._config.max_consecutive_errors,
            )
        )
        if self._owns_scheduler and self._config.auto_sync:
            await self._scheduler.start()
        logger.debug("SyncOrchestrator started (online=%s)", self.is_online)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._unsubscribe_network:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        self._scheduler.unregister(SYNC_JOB_NAME)
        self._cancel_retry()
        if self._owns_scheduler:
            await self._scheduler.stop()
        if self._reconnect_task and not self._reconnect_task.done():
            # Still waiting out the reconnect delay; no sync has begun
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        logger.debug("SyncOrchestrator stopped")

    async def _on_network_change(self, online: bool) -> None:
        await self._events.emit(EventType.NETWORK_CHANGE, {"isOnline": online})
        if online and self._started:
            if self._reconnect_task and not self._reconnect_task.done():
                return
            self._reconnect_task = asyncio.create_task(self._sync_after_reconnect())

    async def _sync_after_reconnect(self) -> None:
        await asyncio.sleep(self._config.reconnect_delay_seconds)
        if self.is_online:
            await self.check_and_sync()

    async def _scheduled_sync(self) -> None:
        if not self.is_online or self._auth_paused:
            return
        await self.check_and_sync()

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def check_and_sync(self) -> SyncResult:
        """Run a sync pass if one is due; otherwise report the cached state."""
        if not self.is_online:
            return SyncResult(success=False, reason="offline")
        if self._auth_paused:
            return SyncResult(success=False, reason="auth_required", error=self._last_error)

        needs = await self._store.needs_sync(self._config.max_age_seconds)
        if not needs.needs_sync:
            cached = await self._store.get_goals(validate_expiry=False)
            return SyncResult(success=True, reason="up_to_date", goals=cached.data or [])
        return await self.perform_sync()

    async def force_sync(self) -> SyncResult:
        """Run a full drain-and-pull pass regardless of freshness."""
        return await self.perform_sync()

    async def perform_sync(self) -> SyncResult:
        if self._sync_lock.locked():
            logger.debug("Sync already in progress; trigger collapsed")
            return SyncResult(success=False, reason="already_syncing")
        if not self.is_online:
            return SyncResult(success=False, reason="offline")

        async with self._sync_lock:
            self._state = SyncState.SYNCING
            await self._events.emit(EventType.SYNC_START, {"timestamp": self._clock().isoformat()})
            try:
                result = await self._run_sync_pass()
            except AuthError as e:
                self._auth_paused = True
                self._cancel_retry()
                result = await self._fail(e, auth=True)
            except RemoteError as e:
                result = await self._fail(e, auth=False)
                self._schedule_retry()
            else:
                self._cancel_retry()
            finally:
                if self._state == SyncState.SYNCING:
                    # Unexpected exception escaped the pass
                    self._state = SyncState.ERROR

        self._last_result = result
        return result

    def _schedule_retry(self) -> None:
        """Register a one-shot retry of a transiently failed pass, backing off exponentially."""
        if not self._started:
            return
        if self._retry_attempts >= self._config.max_retries:
            logger.warning(
                "Sync still failing after %d retries; waiting for the next periodic sync",
                self._retry_attempts,
            )
            self._cancel_retry()
            return
        delay = self._config.retry_base_delay_seconds * (2 ** self._retry_attempts)
        self._retry_attempts += 1
        self._scheduler.register(
            ScheduledJob(
                name=RETRY_JOB_NAME,
                callback=self._retry_sync,
                interval=timedelta(seconds=delay),
            )
        )
        logger.info("Sync retry %d/%d in %.1fs", self._retry_attempts, self._config.max_retries, delay)

    def _cancel_retry(self) -> None:
        self._retry_attempts = 0
        self._scheduler.unregister(RETRY_JOB_NAME)

    async def _retry_sync(self) -> None:
        # One-shot: a failing pass registers the next attempt itself
        self._scheduler.unregister(RETRY_JOB_NAME)
        if not self.is_online or self._auth_paused:
            return
        await self.perform_sync()

    async def _fail(self, error: RemoteError, auth: bool) -> SyncResult:
        self._state = SyncState.ERROR
        self._last_error = str(error)
        logger.warning("Sync failed (%s): %s", "auth" if auth else "transient", error)
        await self._events.emit(
            EventType.SYNC_ERROR,
            {"error": str(error), "auth": auth, "statusCode": error.status_code},
        )
        cached = await self._store.get_goals(validate_expiry=False)
        return SyncResult(
            success=False,
            reason="auth" if auth else "error",
            goals=cached.data or [],
            error=str(error),
        )

    async def _run_sync_pass(self) -> SyncResult:
        drain = await self._drain_offline_changes()
        server_goals, server_stats = await self._pull()

        cached = await self._store.get_goals(validate_expiry=False)
        tombstones = await self._store.get_tombstones()
        resolution = self._resolver.resolve(cached.data or [], server_goals, tombstones)
        if resolution.has_conflicts:
            logger.warning(
                "Resolved %d goal conflict(s): %s",
                len(resolution.conflicts),
                ", ".join(f"{c.goal_id}->{c.resolution}" for c in resolution.conflicts),
            )
        self._last_conflicts = list(resolution.conflicts)

        await self._store.store_goals(resolution.resolved, from_server=True)
        await self._store.store_goal_stats(server_stats or compute_goal_stats(resolution.resolved))
        await self._store.update_last_sync()
        cleared = await self._store.clear_synced_changes()

        self._state = SyncState.IDLE
        self._last_error = None
        log_display(
            logger,
            logging.INFO,
            "Goal sync completed: %d goals, %d change(s) pushed, %d conflict(s)",
            len(resolution.resolved),
            drain.succeeded,
            len(resolution.conflicts),
        )
        await self._events.emit(
            EventType.SYNC_COMPLETE,
            {
                "goalCount": len(resolution.resolved),
                "conflicts": [c.to_dict() for c in resolution.conflicts],
                "offlineChanges": drain.to_dict(),
                "clearedChanges": cleared,
            },
        )
        return SyncResult(
            success=True,
            goals=resolution.resolved,
            conflicts=resolution.conflicts,
            drain=drain,
        )

    async def _pull(self) -> tuple[List[Goal], Optional[GoalStats]]:
        goals_result = await call_remote("list_goals", self._remote.list_goals(self._token))
        if not goals_result.success:
            raise goals_result.to_error()
        server_goals = _goals_from_payload(goals_result.data)

        stats: Optional[GoalStats] = None
        try:
            stats_result = await call_remote("get_goal_stats", self._remote.get_goal_stats(self._token))
        except TransientNetworkError as e:
            logger.info("Goal stats unavailable, computing locally: %s", e)
        else:
            if stats_result.success:
                stats = _stats_from_payload(stats_result.data)
            elif stats_result.is_auth_failure:
                raise stats_result.to_error()
        return server_goals, stats

    # -------------------------------------------------------------------------
    # Offline queue drain
    # -------------------------------------------------------------------------

    async def _drain_offline_changes(self) -> DrainReport:
        report = DrainReport()
        changes = await self._store.get_unsynced_changes()
        if not changes:
            return report
        logger.info("Draining %d offline change(s)", len(changes))

        for change in changes:
            report.processed += 1
            goal_id = report.id_map.get(change.goal_id, change.goal_id) if change.goal_id else None
            try:
                result = await self._push_change(change, goal_id)
            except AuthError:
                raise
            except TransientNetworkError as e:
                result = ApiResult.fail(str(e))

            if result.is_auth_failure:
                raise result.to_error()

            if result.success or (change.type == ChangeType.DELETE and result.status_code in (404, 410)):
                report.succeeded += 1
                await self._store.mark_changes_synced([change.id])
                await self._after_push(change, goal_id, result, report)
            else:
                report.failed += 1
                report.failed_change_ids.append(change.id)
                logger.warning(
                    "Offline %s change %s for goal %s failed: %s",
                    change.type.value,
                    change.id,
                    goal_id,
                    result.error,
                )

        return report

    async def _push_change(self, change: OfflineChange, goal_id: Optional[str]) -> ApiResult:
        if change.type == ChangeType.CREATE:
            return await call_remote("create_goal", self._remote.create_goal(change.payload, self._token))
        if not goal_id or goal_id.startswith(TEMP_ID_PREFIX):
            return ApiResult.fail(f"goal {goal_id} has not been created on the server yet")
        if change.type == ChangeType.UPDATE:
            return await call_remote("update_goal", self._remote.update_goal(goal_id, change.payload, self._token))
        return await call_remote("delete_goal", self._remote.delete_goal(goal_id, self._token))

    async def _after_push(
        self, change: OfflineChange, goal_id: Optional[str], result: ApiResult, report: DrainReport
    ) -> None:
        if change.type == ChangeType.CREATE and change.goal_id:
            server_goal = _goal_from_payload(result.data)
            if server_goal is None:
                # The next pull brings the server copy; drop the temporary one
                await self._remove_cached_goal(change.goal_id)
                return
            report.id_map[change.goal_id] = server_goal.id
            await self._store.remap_goal_id(change.goal_id, server_goal.id)
            await self._replace_cached_goal(change.goal_id, server_goal)
            logger.info("Offline goal %s created on server as %s", change.goal_id, server_goal.id)
        elif change.type == ChangeType.UPDATE and goal_id:
            server_goal = _goal_from_payload(result.data)
            if server_goal is not None:
                await self._replace_cached_goal(goal_id, server_goal)
        elif change.type == ChangeType.DELETE and goal_id:
            await self._store.remove_tombstones([goal_id])

    # -------------------------------------------------------------------------
    # Cached goal list helpers
    # -------------------------------------------------------------------------

    async def _cached_goals(self) -> List[Goal]:
        return list((await self._store.get_goals(validate_expiry=False)).data or [])

    async def _replace_cached_goal(self, old_id: str, goal: Goal) -> None:
        goals = await self._cached_goals()
        replaced = False
        for i, existing in enumerate(goals):
            if existing.id in (old_id, goal.id):
                if not replaced:
                    goals[i] = goal
                    replaced = True
                else:
                    goals[i] = None
        goals = [g for g in goals if g is not None]
        if not replaced:
            goals.append(goal)
        await self._store.store_goals(goals, from_server=False)

    async def _remove_cached_goal(self, goal_id: str) -> None:
        goals = await self._cached_goals()
        remaining = [g for g in goals if g.id != goal_id]
        if len(remaining) != len(goals):
            await self._store.store_goals(remaining, from_server=False)

    def _can_reach_remote(self) -> bool:
        return self.is_online and not self._auth_paused

    @staticmethod
    def _is_rejection(result: ApiResult) -> bool:
        return not result.success and result.status_code in _NON_RETRYABLE_STATUS

    async def _handle_auth_failure(self, error: RemoteError) -> None:
        self._auth_paused = True
        self._state = SyncState.ERROR
        self._last_error = str(error)
        await self._events.emit(
            EventType.SYNC_ERROR, {"error": str(error), "auth": True, "statusCode": error.status_code}
        )

    async def _queue_change(
        self, change_type: ChangeType, payload: Dict[str, Any], goal_id: Optional[str]
    ) -> Optional[str]:
        change_id = await self._store.record_offline_change(change_type, payload, goal_id)
        await self._events.emit(
            EventType.OFFLINE_CHANGE,
            {"type": change_type.value, "changeId": change_id, "payload": payload},
            goal_id=goal_id,
        )
        return change_id

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_goal(self, payload: Dict[str, Any]) -> MutationResult:
        """
        Create a goal from a validated camelCase payload.

        Online, the remote API is called directly. Offline, or when the call
        fails transiently, the goal gets a temporary id, is added to the
        cached list and a create change is queued.
        """
        if self._can_reach_remote():
            try:
                result = await call_remote("create_goal", self._remote.create_goal(payload, self._token))
            except AuthError as e:
                await self._handle_auth_failure(e)
            except TransientNetworkError as e:
                logger.info("Create goal fell back to offline queue: %s", e)
            else:
                if result.success:
                    goal = _goal_from_payload(result.data)
                    if goal is not None:
                        await self._replace_cached_goal(goal.id, goal)
                        return MutationResult(success=True, goal=goal)
                    logger.warning("Create goal succeeded without a usable goal in the response")
                    return MutationResult(success=True)
                if result.is_auth_failure:
                    await self._handle_auth_failure(result.to_error())
                elif self._is_rejection(result):
                    return MutationResult(success=False, error=result.error)

        now = self._clock()
        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"
        goal = Goal.model_validate(
            {
                **payload,
                "id": temp_id,
                "userId": self._store.user_id,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        change_id = await self._queue_change(ChangeType.CREATE, payload, temp_id)
        goals = await self._cached_goals()
        goals.append(goal)
        await self._store.store_goals(goals, from_server=False)
        return MutationResult(success=change_id is not None, goal=goal, queued=True, change_id=change_id)

    async def update_goal(self, goal_id: str, updates: Dict[str, Any]) -> MutationResult:
        """Update a goal with validated camelCase fields; queued when offline."""
        is_temp = goal_id.startswith(TEMP_ID_PREFIX)
        if self._can_reach_remote() and not is_temp:
            try:
                result = await call_remote("update_goal", self._remote.update_goal(goal_id, updates, self._token))
            except AuthError as e:
                await self._handle_auth_failure(e)
            except TransientNetworkError as e:
                logger.info("Update goal fell back to offline queue: %s", e)
            else:
                if result.success:
                    goal = _goal_from_payload(result.data) or await self._apply_local_update(goal_id, updates)
                    if goal is not None:
                        await self._replace_cached_goal(goal_id, goal)
                    return MutationResult(success=True, goal=goal)
                if result.is_auth_failure:
                    await self._handle_auth_failure(result.to_error())
                elif self._is_rejection(result):
                    return MutationResult(success=False, error=result.error)

        goal = await self._apply_local_update(goal_id, updates)
        if goal is not None:
            await self._replace_cached_goal(goal_id, goal)
        change_id = await self._queue_change(ChangeType.UPDATE, updates, goal_id)
        return MutationResult(success=change_id is not None, goal=goal, queued=True, change_id=change_id)

    async def _apply_local_update(self, goal_id: str, updates: Dict[str, Any]) -> Optional[Goal]:
        for goal in await self._cached_goals():
            if goal.id == goal_id:
                merged = goal.model_dump()
                merged.update({to_snake(k): v for k, v in updates.items()})
                merged["updated_at"] = self._clock()
                return Goal.model_validate(merged)
        logger.warning("Update for unknown goal %s recorded without local copy", goal_id)
        return None

    async def delete_goal(self, goal_id: str) -> MutationResult:
        """
        Delete a goal.

        A goal that only exists locally (temporary id) is dropped together
        with its queued changes. Otherwise an offline delete is queued and a
        tombstone keeps the goal out of later server pulls until it syncs.
        """
        if goal_id.startswith(TEMP_ID_PREFIX):
            discarded = await self._store.discard_changes_for_goal(goal_id)
            await self._remove_cached_goal(goal_id)
            logger.info("Discarded unsynced goal %s and %d queued change(s)", goal_id, discarded)
            return MutationResult(success=True)

        if self._can_reach_remote():
            try:
                result = await call_remote("delete_goal", self._remote.delete_goal(goal_id, self._token))
            except AuthError as e:
                await self._handle_auth_failure(e)
            except TransientNetworkError as e:
                logger.info("Delete goal fell back to offline queue: %s", e)
            else:
                if result.success or result.status_code in (404, 410):
                    await self._remove_cached_goal(goal_id)
                    return MutationResult(success=True)
                if result.is_auth_failure:
                    await self._handle_auth_failure(result.to_error())
                elif self._is_rejection(result):
                    return MutationResult(success=False, error=result.error)

        change_id = await self._queue_change(ChangeType.DELETE, {}, goal_id)
        await self._store.add_tombstone(goal_id)
        await self._remove_cached_goal(goal_id)
        return MutationResult(success=change_id is not None, queued=True, change_id=change_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(self) -> Dict[str, Any]:
        last_sync = await self._store.get_last_sync()
        pending = await self._store.get_unsynced_changes()
        return {
            "state": self._state.value,
            "isOnline": self.is_online,
            "isSyncing": self.is_syncing,
            "authPaused": self._auth_paused,
            "lastSync": last_sync.isoformat() if last_sync else None,
            "lastError": self._last_error,
            "pendingChanges": len(pending),
            "lastConflicts": len(self._last_conflicts),
            "retryAttempts": self._retry_attempts,
        }
