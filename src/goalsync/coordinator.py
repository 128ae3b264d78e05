# src/goalsync/coordinator.py
"""
Goal Update Coordinator - the facade the presentation layer talks to.

Responsibilities:
    - Serve the goal list (cached first, then refreshed in the background)
    - Apply purchase events optimistically and reconcile them later
    - Detect milestones and achievements and emit them as events
    - Expose derived views (active, achieved, near completion)
    - Validate goal edits before handing them to the SyncOrchestrator

Optimistic purchase updates are two-phase. A purchase is first applied
locally and the affected goals are marked ``confirmed=False``. Every later
refresh checks whether the server's progress already covers the tentative
units: if so the server version confirms it, if not the tentative items are
re-applied on top of the server progress. Tentative updates that stay
unconfirmed longer than ``pending_ttl_seconds`` are dropped in favor of the
server data.

Example:
    coordinator = GoalUpdateCoordinator(store, orchestrator, events)
    await coordinator.initialize()
    goals = await coordinator.fetch_goals()
    await coordinator.track_purchase_progress(order_items)
    coordinator.close()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from .config.models import TrackingConfig
from .events import EventBus, EventType, GoalEvent, Subscription
from .exceptions import NotInitializedError
from .models import Goal, GoalStats, ProductSnapshot, PurchaseRecord, utcnow
from .progress.calculator import (
    AlignmentReport,
    apply_progress,
    apply_purchase,
    check_product_meets_goals,
    compute_goal_stats,
)
from .progress.report import ProgressReport, build_progress_report
from .progress.validation import ensure_valid_goal
from .storage.local_store import LocalStore
from .sync.orchestrator import MutationResult, SyncOrchestrator
from .sync.scheduler import PeriodicScheduler, ScheduledJob

logger = logging.getLogger(__name__)

REFRESH_JOB_NAME = "goal_refresh"


# =============================================================================
# Milestones and achievements
# =============================================================================


class MilestoneTracker:
    """
    Finds the milestone crossed by a progress change.

    Milestones are percentages of the goal's own target. Only the highest
    threshold crossed in one change is reported.
    """

    def __init__(self, milestones: Sequence[int] = (25, 50, 75, 90)):
        self.milestones = sorted(set(milestones))

    def detect(self, previous: Goal, current: Goal) -> Optional[int]:
        old_ratio = previous.progress_ratio * 100
        new_ratio = current.progress_ratio * 100
        crossed = [m for m in self.milestones if old_ratio < m <= new_ratio]
        return crossed[-1] if crossed else None


class AchievementTracker:
    """Remembers which goals were last seen achieved so each achievement fires once."""

    def __init__(self) -> None:
        self._achieved: Set[str] = set()

    def prime(self, goals: Iterable[Goal]) -> None:
        self._achieved = {g.id for g in goals if g.is_achieved}

    def observe(self, goal: Goal) -> bool:
        """Record the goal's state; True on a not-achieved to achieved transition."""
        if goal.is_achieved:
            if goal.id in self._achieved:
                return False
            self._achieved.add(goal.id)
            return True
        self._achieved.discard(goal.id)
        return False

    def forget(self, goal_id: str) -> None:
        self._achieved.discard(goal_id)


@dataclass
class PendingUpdate:
    """Purchase items applied tentatively to one goal."""

    items: List[PurchaseRecord]
    baseline_total: int
    created_at: datetime

    @property
    def units(self) -> int:
        return sum(item.quantity for item in self.items)


@dataclass
class CartAlignment:
    reports: List[AlignmentReport] = field(default_factory=list)
    aligned_items: int = 0
    total_items: int = 0

    @property
    def alignment_percentage(self) -> float:
        if self.total_items == 0:
            return 0.0
        return round(self.aligned_items / self.total_items * 100, 1)


# =============================================================================
# Coordinator
# =============================================================================


class GoalUpdateCoordinator:
    """
    Facade over LocalStore and SyncOrchestrator for one user session.

    The in-memory goal list is a cache of the LocalStore; every change is
    persisted before it is published.

    Args:
        store: Per-user LocalStore.
        orchestrator: SyncOrchestrator used for refreshes and goal edits.
        events: Event bus shared with the orchestrator.
        config: Tracking settings (refresh timing, milestones).
        scheduler: Scheduler for the periodic refresh job, if any.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store: LocalStore,
        orchestrator: SyncOrchestrator,
        events: Optional[EventBus] = None,
        config: Optional[TrackingConfig] = None,
        scheduler: Optional[PeriodicScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._events = events or orchestrator.events
        self._config = config or TrackingConfig()
        self._scheduler = scheduler
        self._clock = clock

        self._milestones = MilestoneTracker(self._config.milestones)
        self._achievements = AchievementTracker()
        self._goals: List[Goal] = []
        self._stats: Optional[GoalStats] = None
        self._pending: Dict[str, PendingUpdate] = {}
        self._subscriptions: List[Subscription] = []
        self._background: Set[asyncio.Task] = set()

        self._initialized = False
        self._loaded_once = False
        self._alive = True
        self.loading = False
        self.error: Optional[str] = None
        self.last_update: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the cached snapshot and subscribe to sync events."""
        if self._initialized:
            return
        cached = await self._store.get_goals(validate_expiry=False)
        self._goals = list(cached.data or [])
        stats = await self._store.get_goal_stats(validate_expiry=False)
        self._stats = stats.data
        self._achievements.prime(self._goals)
        self._loaded_once = bool(self._goals)
        self.last_update = cached.timestamp

        self._subscriptions.append(self._events.subscribe(self._on_sync_complete, {EventType.SYNC_COMPLETE}))
        self._subscriptions.append(self._events.subscribe(self._on_sync_error, {EventType.SYNC_ERROR}))
        self._initialized = True
        logger.debug("Coordinator initialized with %d cached goal(s)", len(self._goals))

    def start(self) -> None:
        """Register the periodic refresh job on the scheduler."""
        self._require_initialized()
        if self._scheduler is not None:
            self._scheduler.register(
                ScheduledJob(
                    name=REFRESH_JOB_NAME,
                    callback=self.refresh,
                    interval=timedelta(seconds=self._config.refresh_interval_seconds),
                )
            )

    def close(self) -> None:
        """
        Tear down the coordinator.

        Background work that is still running completes, but its results are
        no longer applied.
        """
        self._alive = False
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._scheduler is not None:
            self._scheduler.unregister(REFRESH_JOB_NAME)

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("GoalUpdateCoordinator")

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background refreshes started so far."""
        while self._background:
            tasks = list(self._background)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._background.difference_update(tasks)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    @property
    def goals(self) -> List[Goal]:
        return list(self._goals)

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        for goal in self._goals:
            if goal.id == goal_id:
                return goal
        return None

    @property
    def active_goals(self) -> List[Goal]:
        return [g for g in self._goals if g.is_active]

    @property
    def achieved_goals(self) -> List[Goal]:
        return [g for g in self._goals if g.is_achieved]

    @property
    def near_completion_goals(self) -> List[Goal]:
        threshold = self._config.near_completion_ratio
        return [g for g in self._goals if not g.is_achieved and g.progress_ratio >= threshold]

    @property
    def stats(self) -> GoalStats:
        return self._stats or compute_goal_stats(self._goals)

    @property
    def pending_goal_ids(self) -> List[str]:
        return list(self._pending)

    # -------------------------------------------------------------------------
    # Fetch and refresh
    # -------------------------------------------------------------------------

    async def fetch_goals(self, use_cache: bool = True) -> List[Goal]:
        """
        Return the goal list.

        With ``use_cache`` the LocalStore snapshot is returned at once and a
        refresh runs in the background (skipped while offline). Without it
        the refresh is awaited first.
        """
        self._require_initialized()
        if not use_cache:
            await self.refresh()
            return self.goals

        cached = await self._store.get_goals(validate_expiry=True)
        if cached.cached:
            await self._apply_goal_list(self._reapply_pending(cached.data or []))
        if self._orchestrator.is_online:
            self._spawn(self.refresh())
        return self.goals

    async def refresh(self) -> bool:
        """
        Pull fresh data through the orchestrator and reconcile it.

        Returns:
            True if a sync pass completed
        """
        if not self._alive:
            return False
        self.loading = True
        try:
            if self._orchestrator.is_online:
                result = await self._orchestrator.force_sync()
                if result.success:
                    self.error = None
                    return True
                if result.reason == "already_syncing":
                    return False
                self.error = result.error
            await self._reload_from_store()
            return False
        finally:
            self.loading = False

    async def _on_sync_complete(self, event: GoalEvent) -> None:
        if self._alive:
            await self._reload_from_store()

    async def _on_sync_error(self, event: GoalEvent) -> None:
        if self._alive:
            self.error = event.payload.get("error")

    async def _reload_from_store(self) -> None:
        if not self._alive:
            return
        cached = await self._store.get_goals(validate_expiry=False)
        stats = await self._store.get_goal_stats(validate_expiry=False)
        if not self._alive:
            return

        goals = list(cached.data or [])
        merged = self._reapply_pending(goals)
        if merged != goals:
            await self._store.store_goals(merged, from_server=False)
        if stats.cached:
            self._stats = stats.data
        await self._apply_goal_list(merged)

    def _reapply_pending(self, goals: List[Goal]) -> List[Goal]:
        """Confirm, re-apply or expire tentative purchase updates over ``goals``."""
        if not self._pending:
            return goals

        now = self._clock()
        ttl = timedelta(seconds=self._config.pending_ttl_seconds)
        present = {g.id for g in goals}
        for goal_id in [gid for gid in self._pending if gid not in present]:
            del self._pending[goal_id]

        merged: List[Goal] = []
        for goal in goals:
            pending = self._pending.get(goal.id)
            if pending is None or not goal.confirmed:
                merged.append(goal)
                continue
            if now - pending.created_at > ttl:
                logger.info("Tentative update for goal %s expired unconfirmed", goal.id)
                del self._pending[goal.id]
                merged.append(goal)
                continue
            if goal.progress.total_purchases >= pending.baseline_total + pending.units:
                del self._pending[goal.id]
                merged.append(goal)
                continue
            progress = apply_purchase(goal.progress, goal, pending.items)
            merged.append(apply_progress(goal, progress, now, confirmed=False))
        return merged

    # -------------------------------------------------------------------------
    # Purchases
    # -------------------------------------------------------------------------

    async def track_purchase_progress(
        self, purchase: Iterable[Union[PurchaseRecord, Dict[str, Any]]]
    ) -> List[Goal]:
        """
        Apply a completed order's line items to every active goal.

        The update is tentative until a later refresh confirms it; a
        deferred refresh is scheduled after ``refresh_delay_seconds``.

        Returns:
            The updated active goals
        """
        self._require_initialized()
        items = [p if isinstance(p, PurchaseRecord) else PurchaseRecord.model_validate(p) for p in purchase]
        items = [item for item in items if item.quantity > 0]
        if not items:
            return []

        now = self._clock()
        updated: List[Goal] = []
        new_list: List[Goal] = []
        for goal in self._goals:
            if not goal.is_active:
                new_list.append(goal)
                continue
            progress = apply_purchase(goal.progress, goal, items)
            new_goal = apply_progress(goal, progress, now, confirmed=False)
            pending = self._pending.get(goal.id)
            if pending is None:
                self._pending[goal.id] = PendingUpdate(
                    items=list(items), baseline_total=goal.progress.total_purchases, created_at=now
                )
            else:
                pending.items.extend(items)
            new_list.append(new_goal)
            updated.append(new_goal)

        await self._store.store_goals(new_list, from_server=False)
        await self._apply_goal_list(new_list)
        logger.info("Applied purchase of %d item(s) to %d active goal(s)", len(items), len(updated))

        if self._orchestrator.is_online:
            self._spawn(self._deferred_refresh())
        return updated

    async def _deferred_refresh(self) -> None:
        await asyncio.sleep(self._config.refresh_delay_seconds)
        if self._alive:
            await self.refresh()

    # -------------------------------------------------------------------------
    # Event detection
    # -------------------------------------------------------------------------

    async def _apply_goal_list(self, goals: List[Goal]) -> None:
        if not self._alive:
            return
        previous = {g.id: g for g in self._goals}
        if not previous and not self._loaded_once:
            # First goals seen this session carry no transition
            self._achievements.prime(goals)
        self._loaded_once = self._loaded_once or bool(goals)
        self._goals = list(goals)
        self.last_update = self._clock()

        for goal in goals:
            before = previous.get(goal.id)
            if before is not None:
                milestone = self._milestones.detect(before, goal)
                if milestone is not None:
                    await self._events.emit(
                        EventType.MILESTONE,
                        {
                            "goal": goal.to_wire(),
                            "milestone": milestone,
                            "progressRatio": round(goal.progress_ratio * 100, 1),
                            "currentPercentage": goal.progress.current_percentage,
                        },
                        goal_id=goal.id,
                    )
            if self._achievements.observe(goal):
                logger.info("Goal %s achieved", goal.id)
                await self._events.emit(
                    EventType.ACHIEVEMENT,
                    {"goal": goal.to_wire(), "currentPercentage": goal.progress.current_percentage},
                    goal_id=goal.id,
                )

        current_ids = {g.id for g in goals}
        for goal_id in previous.keys() - current_ids:
            self._achievements.forget(goal_id)

        await self._events.emit(
            EventType.GOALS_UPDATED,
            {"count": len(goals), "activeCount": sum(1 for g in goals if g.is_active)},
        )

    # -------------------------------------------------------------------------
    # Alignment and reports
    # -------------------------------------------------------------------------

    def check_product_alignment(self, product: Union[ProductSnapshot, Dict[str, Any]]) -> AlignmentReport:
        """Report which active goals ``product`` would count toward. Goals are not modified."""
        if not isinstance(product, ProductSnapshot):
            product = ProductSnapshot.model_validate(product)
        return check_product_meets_goals(product, self._goals)

    def check_cart_alignment(
        self, items: Iterable[Union[PurchaseRecord, Dict[str, Any]]]
    ) -> CartAlignment:
        """Alignment of every cart line plus the share of units meeting any goal."""
        cart = CartAlignment()
        for item in items:
            if not isinstance(item, PurchaseRecord):
                item = PurchaseRecord.model_validate(item)
            report = check_product_meets_goals(item.product, self._goals)
            cart.reports.append(report)
            cart.total_items += item.quantity
            if report.meets_any_goal:
                cart.aligned_items += item.quantity
        return cart

    def get_progress_report(
        self,
        goal_id: str,
        purchase_history: Sequence[PurchaseRecord],
        timeframe: str = "all",
    ) -> Optional[ProgressReport]:
        goal = self.get_goal(goal_id)
        if goal is None:
            return None
        return build_progress_report(goal, purchase_history, timeframe=timeframe, now=self._clock())

    # -------------------------------------------------------------------------
    # Goal edits
    # -------------------------------------------------------------------------

    async def create_goal(self, payload: Dict[str, Any]) -> MutationResult:
        """
        Validate and create a goal.

        Raises:
            ValidationError: Before anything is persisted or queued
        """
        self._require_initialized()
        normalized = ensure_valid_goal(payload)
        result = await self._orchestrator.create_goal(normalized)
        await self._reload_from_store()
        return result

    async def update_goal(self, goal_id: str, updates: Dict[str, Any]) -> MutationResult:
        """
        Validate and apply a partial goal update.

        A config change without a type is checked against the goal's current type.

        Raises:
            ValidationError: Before anything is persisted or queued
        """
        self._require_initialized()
        candidate = dict(updates)
        existing = self.get_goal(goal_id)
        has_config = "goalConfig" in candidate or "goal_config" in candidate
        has_type = "goalType" in candidate or "goal_type" in candidate
        if has_config and not has_type and existing is not None:
            candidate["goalType"] = existing.goal_type.value
        normalized = ensure_valid_goal(candidate, partial=True)
        result = await self._orchestrator.update_goal(goal_id, normalized)
        await self._reload_from_store()
        return result

    async def delete_goal(self, goal_id: str) -> MutationResult:
        self._require_initialized()
        result = await self._orchestrator.delete_goal(goal_id)
        self._pending.pop(goal_id, None)
        await self._reload_from_store()
        return result
