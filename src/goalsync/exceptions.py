# src/goalsync/exceptions.py
"""
Custom exceptions for the goalsync library.

This module defines a hierarchy of exception classes so that applications
embedding the goal engine can tell recoverable sync problems apart from
programmer errors and rejected input.
"""

from typing import Any, List, Optional


class GoalSyncError(Exception):
    """Base class for all goalsync specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in goalsync."):
        super().__init__(message)

class ConfigError(GoalSyncError):
    """Raised for errors related to configuration loading or validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class ValidationError(GoalSyncError):
    """
    Raised when a goal payload fails shape or range checks.
    Raised before any persistence attempt; ``errors`` holds every message found.
    """
    def __init__(self, errors: Optional[List[str]] = None, message: str = "Goal validation failed."):
        self.errors = list(errors or [])
        detail = f"{message} " + "; ".join(self.errors) if self.errors else message
        super().__init__(detail)

class StorageError(GoalSyncError):
    """Raised by key/value backends when a read or write fails."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class RemoteError(GoalSyncError):
    """Base class for failures reported by the remote goal API."""
    def __init__(self, message: str = "Remote goal API error.", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

class TransientNetworkError(RemoteError):
    """Raised for network failures and timeouts that should be retried on the next cycle."""
    def __init__(self, message: str = "Network unavailable.", status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)

class AuthError(RemoteError):
    """Raised when the remote API rejects the session token. Not retried automatically."""
    def __init__(self, message: str = "Authentication rejected by remote goal API.", status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)

class ConflictDetected(GoalSyncError):
    """
    Describes local/server divergence found while reconciling goals.
    Not fatal: conflicts are resolved automatically and kept for inspection.
    """
    def __init__(self, conflicts: Optional[List[Any]] = None, message: str = "Goal conflicts detected."):
        self.conflicts = list(conflicts or [])
        super().__init__(f"{message} Count: {len(self.conflicts)}")

class NotInitializedError(GoalSyncError):
    """Raised when a component is used before ``initialize()`` has completed."""
    def __init__(self, component: str = "GoalUpdateCoordinator", message: str = "Component used before initialization."):
        self.component = component
        super().__init__(f"{message} Component: '{component}'")
