# src/goalsync/session.py
"""
Session-scoped wiring of the goal engine.

A GoalSession is created when a user logs in and closed when they log out.
It owns every stateful component for that user, so nothing about one
user's goals outlives their session or leaks into another's.

Example:
    session = GoalSession.create(remote=api_client, user_id="u1", token=token)
    async with session:
        session.events.subscribe(show_toast, {"achievement", "milestone"})
        goals = await session.coordinator.fetch_goals()
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .config.models import GoalSyncConfig
from .coordinator import GoalUpdateCoordinator
from .events import EventBus
from .models import utcnow
from .storage.backends import KeyValueStorage, create_storage
from .storage.local_store import LocalStore
from .sync.connectivity import NetworkMonitor
from .sync.orchestrator import SyncOrchestrator
from .sync.remote import RemoteGoalAPI
from .sync.scheduler import PeriodicScheduler

logger = logging.getLogger(__name__)


class GoalSession:
    """
    Context object holding one user's goal engine.

    Use :meth:`create` rather than the constructor unless components need
    to be injected individually.
    """

    def __init__(
        self,
        config: GoalSyncConfig,
        store: LocalStore,
        events: EventBus,
        network: NetworkMonitor,
        scheduler: PeriodicScheduler,
        orchestrator: SyncOrchestrator,
        coordinator: GoalUpdateCoordinator,
    ) -> None:
        self.config = config
        self.store = store
        self.events = events
        self.network = network
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.coordinator = coordinator
        self._started = False
        self._closed = False

    @classmethod
    def create(
        cls,
        remote: RemoteGoalAPI,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        config: Optional[GoalSyncConfig] = None,
        storage: Optional[KeyValueStorage] = None,
        network: Optional[NetworkMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "GoalSession":
        """
        Build a session from configuration.

        Args:
            remote: Remote goal API client
            user_id: Logged-in user, None for a guest session
            token: Session token for remote calls
            config: Engine configuration (defaults when omitted)
            storage: Key/value backend (built from ``config.storage`` when omitted)
            network: Reachability source (always online when omitted)
            clock: Time source shared by all components
        """
        config = config or GoalSyncConfig()
        storage = storage if storage is not None else create_storage(config.storage)
        store = LocalStore(storage, config=config.storage, user_id=user_id, clock=clock)
        events = EventBus()
        network = network or NetworkMonitor(online=True)
        scheduler = PeriodicScheduler(tick_interval=timedelta(seconds=1), clock=clock)
        orchestrator = SyncOrchestrator(
            store,
            remote,
            events=events,
            network=network,
            config=config.sync,
            token=token,
            scheduler=scheduler,
            clock=clock,
        )
        coordinator = GoalUpdateCoordinator(
            store,
            orchestrator,
            events=events,
            config=config.tracking,
            scheduler=scheduler,
            clock=clock,
        )
        return cls(config, store, events, network, scheduler, orchestrator, coordinator)

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Load cached state and begin background work.

        Periodic sync and refresh only run when both the configuration and
        the user's ``autoSync`` preference allow it.
        """
        if self._started:
            return
        await self.coordinator.initialize()
        await self.orchestrator.start()
        self.coordinator.start()

        preferences = await self.store.get_user_preferences()
        if self.config.sync.auto_sync and preferences.auto_sync:
            await self.scheduler.start()
        else:
            logger.info("Automatic goal sync disabled for %s", self.store.namespace)
        self._started = True
        logger.info("Goal session started for %s", self.store.namespace)

    async def close(self) -> None:
        """Stop background work and release storage. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.coordinator.close()
        await self.orchestrator.stop()
        await self.scheduler.stop()
        await self.coordinator.wait_idle()
        await self.store.close()
        self.events.clear()
        self._started = False
        logger.info("Goal session closed for %s", self.store.namespace)

    def update_token(self, token: Optional[str]) -> None:
        self.orchestrator.set_token(token)

    async def get_debug_info(self) -> Dict[str, Any]:
        return {
            "store": await self.store.get_debug_info(),
            "sync": await self.orchestrator.get_status(),
            "scheduler": self.scheduler.get_status(),
            "goals": len(self.coordinator.goals),
            "pendingGoalIds": self.coordinator.pending_goal_ids,
        }

    async def __aenter__(self) -> "GoalSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
