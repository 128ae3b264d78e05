# src/goalsync/config/models.py
"""
Configuration models for the goal engine.

This module defines Pydantic models for every configuration section.
They provide type-safe loading, validation with sensible defaults, and
a single place to read the tunables of each component.

The configuration hierarchy:
    GoalSyncConfig (root)
    ├── StorageConfig    - Key/value backend and cache lifetimes
    ├── SyncConfig       - Offline queue draining and periodic sync
    ├── TrackingConfig   - Progress refresh, milestones, optimistic updates
    └── LoggingConfig    - Console/file logging options

Usage:
    >>> from goalsync.config import GoalSyncConfig
    >>> config = GoalSyncConfig()  # All defaults
    >>> config.storage.cache_ttl_seconds
    600
    >>> config.tracking.milestones
    [25, 50, 75, 90]
"""

from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# STORAGE CONFIGURATION
# =============================================================================


class StorageConfig(BaseModel):
    """
    Configuration for the persistent key/value store behind LocalStore.

    Examples:
        >>> config = StorageConfig()
        >>> config.backend
        'json'
        >>> config.max_offline_changes
        100
    """

    backend: Literal["memory", "json", "sqlite"] = Field(
        default="json",
        description="Key/value backend: in-process memory, JSON file, or SQLite",
    )
    path: str = Field(
        default="~/.local/share/goalsync/store.json",
        description=(
            "File used by the json and sqlite backends. "
            "Tilde and environment variable expansion is applied."
        ),
    )
    cache_ttl_seconds: int = Field(
        default=600,
        ge=0,
        description="Age after which cached goals are reported as expired",
    )
    stats_ttl_seconds: int = Field(
        default=600,
        ge=0,
        description="Age after which cached goal statistics are reported as expired",
    )
    max_offline_changes: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Capacity of the offline change log; oldest entries are evicted first",
    )

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand ~ and environment variables in path."""
        return os.path.expanduser(os.path.expandvars(v))


# =============================================================================
# SYNC CONFIGURATION
# =============================================================================


class SyncConfig(BaseModel):
    """Configuration for the SyncOrchestrator."""

    auto_sync: bool = Field(
        default=True,
        description="Run periodic background sync while online",
    )
    interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Interval between periodic sync checks",
    )
    max_age_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="A sync is needed once the last successful sync is older than this",
    )
    reconnect_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay before syncing after network reachability returns",
    )
    max_consecutive_errors: int = Field(
        default=5,
        ge=1,
        description="Consecutive scheduler failures before the sync job is circuit-broken",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Backoff retries after a transient sync failure before waiting for the periodic job",
    )
    retry_base_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay of the first retry; each further retry doubles it",
    )


# =============================================================================
# TRACKING CONFIGURATION
# =============================================================================


class TrackingConfig(BaseModel):
    """
    Configuration for progress tracking in the GoalUpdateCoordinator.

    Milestones are expressed as a percentage of each goal's own target.
    """

    refresh_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Interval of the periodic goal refresh",
    )
    refresh_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay of the authoritative refresh scheduled after a purchase",
    )
    milestones: list[int] = Field(
        default_factory=lambda: [25, 50, 75, 90],
        description="Milestone thresholds as a percentage of the goal target",
    )
    near_completion_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Progress/target ratio at which an unachieved goal counts as near completion",
    )
    pending_ttl_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="How long an unconfirmed purchase update is re-applied over server data",
    )

    @field_validator("milestones")
    @classmethod
    def normalize_milestones(cls, v: list[int]) -> list[int]:
        """Sort, de-duplicate, and range-check milestone thresholds."""
        for m in v:
            if not 0 < m <= 100:
                raise ValueError(f"milestone {m} must be within 1..100")
        return sorted(set(v))


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


class LoggingConfig(BaseModel):
    """Options passed through to :func:`goalsync.logging_config.configure_logging`."""

    console_enabled: bool = False
    console_level: str = "WARNING"
    file_enabled: bool = False
    file_level: str = "DEBUG"
    file_directory: str = "~/.local/share/goalsync/logs"
    file_mode: Literal["per_run", "single"] = "single"
    display_min_level: str = "INFO"
    components: dict[str, str] = Field(
        default_factory=lambda: {"goalsync": "INFO", "asyncio": "WARNING", "aiosqlite": "WARNING"}
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class GoalSyncConfig(BaseModel):
    """
    Root configuration for a goal engine session.

    Examples:
        >>> config = GoalSyncConfig(sync=SyncConfig(interval_seconds=60))
        >>> config.sync.interval_seconds
        60.0
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
