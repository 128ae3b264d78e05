# tests/conftest.py
"""
Shared fixtures for goalsync tests.

Provides a controllable clock, goal/product/purchase factories, an in-memory
fake of the remote goal API, and pre-wired store/orchestrator/coordinator
instances.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

# Add source to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from goalsync.config.models import StorageConfig, SyncConfig, TrackingConfig
from goalsync.events import EventBus
from goalsync.models import Goal, ProductSnapshot, PurchaseRecord
from goalsync.progress.calculator import compute_goal_stats
from goalsync.storage.backends import InMemoryKeyValueStorage
from goalsync.storage.local_store import LocalStore
from goalsync.sync.connectivity import NetworkMonitor
from goalsync.sync.orchestrator import SyncOrchestrator
from goalsync.sync.remote import ApiResult
from goalsync.sync.scheduler import PeriodicScheduler

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRemoteGoalAPI:
    """
    In-memory remote authority.

    ``failures`` maps an operation name to an ApiResult to return or an
    exception to raise instead of performing it. ``reject_titles`` makes
    create_goal fail for payloads with those titles. While ``gate`` is set
    and not released, list_goals blocks.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.goals: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Union[ApiResult, Exception]] = {}
        self.reject_titles: set = set()
        self.stats: Optional[Dict[str, Any]] = None
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 1

    def seed(self, goal: Goal) -> None:
        self.goals[goal.id] = goal.to_wire()

    def _failure(self, op: str) -> Optional[ApiResult]:
        failure = self.failures.get(op)
        if isinstance(failure, Exception):
            raise failure
        return failure

    async def list_goals(self, token):
        self.calls.append(("list_goals", token))
        if self.gate is not None:
            await self.gate.wait()
        failure = self._failure("list_goals")
        if failure:
            return failure
        return ApiResult.ok([dict(g) for g in self.goals.values()])

    async def create_goal(self, payload, token):
        self.calls.append(("create_goal", payload.get("title"), token))
        failure = self._failure("create_goal")
        if failure:
            return failure
        if payload.get("title") in self.reject_titles:
            return ApiResult.fail("Server unavailable", status_code=503)
        goal_id = f"srv_{self._next_id}"
        self._next_id += 1
        now = self.clock().isoformat()
        goal = {**payload, "_id": goal_id, "createdAt": now, "updatedAt": now}
        stored = Goal.model_validate(goal).to_wire()
        self.goals[goal_id] = stored
        return ApiResult.ok(dict(stored), status_code=201)

    async def update_goal(self, goal_id, payload, token):
        self.calls.append(("update_goal", goal_id, token))
        failure = self._failure("update_goal")
        if failure:
            return failure
        if goal_id not in self.goals:
            return ApiResult.fail("Goal not found", status_code=404)
        merged = {**self.goals[goal_id], **payload, "updatedAt": self.clock().isoformat()}
        self.goals[goal_id] = Goal.model_validate(merged).to_wire()
        return ApiResult.ok(dict(self.goals[goal_id]))

    async def delete_goal(self, goal_id, token):
        self.calls.append(("delete_goal", goal_id, token))
        failure = self._failure("delete_goal")
        if failure:
            return failure
        if self.goals.pop(goal_id, None) is None:
            return ApiResult.fail("Goal not found", status_code=404)
        return ApiResult.ok({"deleted": goal_id})

    async def get_goal_stats(self, token):
        self.calls.append(("get_goal_stats", token))
        failure = self._failure("get_goal_stats")
        if failure:
            return failure
        if self.stats is not None:
            return ApiResult.ok(self.stats)
        goals = [Goal.model_validate(g) for g in self.goals.values()]
        return ApiResult.ok(compute_goal_stats(goals).to_wire())

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def set_progress(self, goal_id: str, total: int, met: int) -> None:
        """Simulate the server having recorded purchases for a goal."""
        goal = dict(self.goals[goal_id])
        goal["progress"] = {"totalPurchases": total, "goalMetPurchases": met}
        self.goals[goal_id] = Goal.model_validate(goal).to_wire()


def grade_payload(title: str = "Buy greener", percentage: float = 80) -> Dict[str, Any]:
    """A valid, normalized grade-based goal payload."""
    return {
        "title": title,
        "goalType": "grade-based",
        "goalConfig": {"targetGrades": ["A", "B"], "percentage": percentage},
    }


# =============================================================================
# Factories
# =============================================================================


def build_goal(
    goal_id: str = "g1",
    goal_type: str = "grade-based",
    config: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> Goal:
    if config is None:
        config = {
            "grade-based": {"targetGrades": ["A", "B"], "percentage": 80},
            "score-based": {"minimumScore": 70, "percentage": 60},
            "category-based": {"categories": ["Electronics"], "targetGrades": ["A"], "percentage": 50},
        }[goal_type]
    data = {
        "id": goal_id,
        "title": f"Goal {goal_id}",
        "goalType": goal_type,
        "goalConfig": config,
        "isActive": True,
        "createdAt": T0.isoformat(),
        "updatedAt": T0.isoformat(),
    }
    data.update(overrides)
    return Goal.model_validate(data)


def build_purchase(
    grade: Optional[str] = "A",
    quantity: int = 1,
    category: str = "Fashion",
    score: Optional[float] = None,
    price: float = 10.0,
    purchase_date: Optional[datetime] = None,
) -> PurchaseRecord:
    return PurchaseRecord(
        product=ProductSnapshot(
            product_id=f"p_{grade}_{category}",
            name=f"{category} item",
            grade=grade,
            score=score,
            category=category,
            price=price,
        ),
        quantity=quantity,
        purchase_date=purchase_date,
    )


@pytest.fixture
def make_goal():
    return build_goal


@pytest.fixture
def make_purchase():
    return build_purchase


@pytest.fixture
def goal_payload():
    return grade_payload


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage():
    return InMemoryKeyValueStorage()


@pytest.fixture
def store(memory_storage, clock):
    """LocalStore for user u1 over in-memory storage."""
    return LocalStore(memory_storage, config=StorageConfig(max_offline_changes=5), user_id="u1", clock=clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def network():
    return NetworkMonitor(online=True)


@pytest.fixture
def remote(clock):
    return FakeRemoteGoalAPI(clock)


@pytest.fixture
def scheduler(clock):
    """Scheduler that is never started; tests tick it by hand."""
    return PeriodicScheduler(clock=clock)


@pytest.fixture
def orchestrator(store, remote, events, network, scheduler, clock):
    return SyncOrchestrator(
        store,
        remote,
        events=events,
        network=network,
        config=SyncConfig(reconnect_delay_seconds=0, interval_seconds=60, max_age_seconds=600),
        token="token-1",
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def tracking_config():
    return TrackingConfig(refresh_delay_seconds=0, refresh_interval_seconds=30)


@pytest.fixture
def coordinator(store, orchestrator, events, tracking_config, scheduler, clock):
    from goalsync.coordinator import GoalUpdateCoordinator

    return GoalUpdateCoordinator(
        store, orchestrator, events=events, config=tracking_config, scheduler=scheduler, clock=clock
    )
