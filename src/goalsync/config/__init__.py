# src/goalsync/config/__init__.py
"""Configuration models and loading for goalsync."""

from .loader import load_config, load_toml_config
from .models import (
    GoalSyncConfig,
    LoggingConfig,
    StorageConfig,
    SyncConfig,
    TrackingConfig,
)

__all__ = [
    "GoalSyncConfig",
    "LoggingConfig",
    "StorageConfig",
    "SyncConfig",
    "TrackingConfig",
    "load_config",
    "load_toml_config",
]
