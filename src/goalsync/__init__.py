# src/goalsync/__init__.py
"""
goalsync - goal progress tracking and offline synchronization.

Keeps a user's sustainability goals consistent across a local cache, an
offline mutation queue and a remote authority, recomputes progress from
purchase history, and emits milestone and achievement events.
"""

from importlib.metadata import PackageNotFoundError, version

from .config import GoalSyncConfig, load_config
from .coordinator import GoalUpdateCoordinator
from .events import EventBus, EventType, GoalEvent
from .exceptions import (
    AuthError,
    ConfigError,
    ConflictDetected,
    GoalSyncError,
    NotInitializedError,
    RemoteError,
    StorageError,
    TransientNetworkError,
    ValidationError,
)
from .models import (
    Goal,
    GoalConfig,
    GoalStats,
    GoalType,
    Grade,
    OfflineChange,
    ProductSnapshot,
    Progress,
    PurchaseRecord,
)
from .session import GoalSession
from .storage import LocalStore
from .sync import ApiResult, ConflictResolver, NetworkMonitor, SyncOrchestrator

try:
    __version__ = version("goalsync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "ApiResult",
    "AuthError",
    "ConfigError",
    "ConflictDetected",
    "ConflictResolver",
    "EventBus",
    "EventType",
    "Goal",
    "GoalConfig",
    "GoalEvent",
    "GoalSession",
    "GoalStats",
    "GoalSyncConfig",
    "GoalSyncError",
    "GoalType",
    "GoalUpdateCoordinator",
    "Grade",
    "LocalStore",
    "NetworkMonitor",
    "NotInitializedError",
    "OfflineChange",
    "ProductSnapshot",
    "Progress",
    "PurchaseRecord",
    "RemoteError",
    "StorageError",
    "SyncOrchestrator",
    "TransientNetworkError",
    "ValidationError",
    "load_config",
]
