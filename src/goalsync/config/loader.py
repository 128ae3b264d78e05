# src/goalsync/config/loader.py
"""
Configuration loading for goalsync.

Configuration Hierarchy:
    1. Default values (the pydantic models in ``goalsync.config.models``)
    2. Config file (``~/.goalsync/config.toml`` or ``$GOALSYNC_CONFIG``)
    3. Environment variables (GOALSYNC_<SECTION>_<KEY>)
    4. Runtime overrides (passed to ``load_config``)

Example TOML configuration:
    [goalsync.storage]
    backend = "sqlite"
    path = "~/.local/share/goalsync/store.db"
    max_offline_changes = 200

    [goalsync.sync]
    interval_seconds = 120

    [goalsync.tracking]
    milestones = [25, 50, 75, 90]
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

import pydantic

from ..exceptions import ConfigError
from .models import GoalSyncConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "GOALSYNC_"
CONFIG_PATH_ENV = "GOALSYNC_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".goalsync" / "config.toml"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in override take precedence. Nested dictionaries are merged recursively.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _parse_env_value(value: str) -> Any:
    """
    Parse environment variable value to appropriate type.

    Returns:
        Parsed value (bool, int, float, list, or string)
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # List (comma-separated)
    if "," in value:
        return [_parse_env_value(v.strip()) for v in value.split(",") if v.strip()]

    return value


def _apply_env_overrides(config: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Environment variables follow the pattern:
        GOALSYNC_<SECTION>_<KEY>=value

    Examples:
        GOALSYNC_STORAGE_BACKEND=sqlite
        GOALSYNC_SYNC_INTERVAL_SECONDS=60
        GOALSYNC_TRACKING_MILESTONES=25,50,75,90

    Only keys that exist in the known sections are applied.
    """
    environ = os.environ if environ is None else environ
    sections = GoalSyncConfig.model_fields

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue

        # GOALSYNC_SYNC_INTERVAL_SECONDS -> ("sync", "interval_seconds")
        parts = key[len(ENV_PREFIX):].lower().split("_")
        if len(parts) < 2:
            continue

        section = parts[0]
        nested_key = "_".join(parts[1:])
        if section not in sections:
            continue

        section_model = sections[section].annotation
        if nested_key not in getattr(section_model, "model_fields", {}):
            logger.debug("Ignoring unknown config environment variable %s", key)
            continue

        config.setdefault(section, {})[nested_key] = _parse_env_value(value)

    return config


def load_toml_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load the ``[goalsync]`` table from a TOML file.

    A missing file yields an empty dictionary. A file without a
    ``[goalsync]`` table is read as if its top level were that table.
    """
    if config_path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        config_path = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.debug("Config file not found: %s", config_path)
        return {}

    try:
        with open(config_path, "rb") as f:
            full_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    logger.debug("Loaded config file: %s", config_path)
    return full_config.get("goalsync", full_config)


def load_config(
    config_path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> GoalSyncConfig:
    """
    Load goal engine configuration from all sources.

    Args:
        config_path: Optional TOML file to read instead of the default
        overrides: Runtime overrides, merged last
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated GoalSyncConfig

    Raises:
        ConfigError: If the merged configuration fails validation
    """
    path = Path(config_path).expanduser() if config_path is not None else None
    data = load_toml_config(path)
    data = _apply_env_overrides(data, environ)
    if overrides:
        data = _deep_merge(data, overrides)

    try:
        return GoalSyncConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid goalsync configuration: {e}") from e
