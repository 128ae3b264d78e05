# src/goalsync/sync/__init__.py
"""Offline queue draining, server reconciliation and reachability handling."""

from .conflict_resolver import ConflictRecord, ConflictResolver, ResolutionResult
from .connectivity import NetworkMonitor
from .orchestrator import DrainReport, MutationResult, SyncOrchestrator, SyncResult, SyncState
from .remote import ApiResult, RemoteGoalAPI
from .scheduler import PeriodicScheduler, ScheduledJob

__all__ = [
    "ApiResult",
    "ConflictRecord",
    "ConflictResolver",
    "DrainReport",
    "MutationResult",
    "NetworkMonitor",
    "PeriodicScheduler",
    "RemoteGoalAPI",
    "ResolutionResult",
    "ScheduledJob",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
]
