# tests/test_exceptions.py
"""Tests for the goalsync exception hierarchy."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from goalsync.exceptions import (
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


class TestHierarchy:
    """Every library error derives from GoalSyncError."""

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigError(),
            ValidationError(),
            StorageError(),
            RemoteError(),
            TransientNetworkError(),
            AuthError(),
            ConflictDetected(),
            NotInitializedError(),
        ],
    )
    def test_base_class(self, exc):
        assert isinstance(exc, GoalSyncError)

    def test_remote_errors(self):
        assert isinstance(TransientNetworkError(), RemoteError)
        assert isinstance(AuthError(), RemoteError)
        assert AuthError(status_code=401).status_code == 401
        assert RemoteError().status_code is None


class TestMessages:
    """Tests for the structured attributes and messages."""

    def test_validation_error_lists_every_message(self):
        exc = ValidationError(["Title is required", "Percentage must be between 1 and 100"])

        assert exc.errors == ["Title is required", "Percentage must be between 1 and 100"]
        assert "Title is required; Percentage" in str(exc)
        assert str(ValidationError()) == "Goal validation failed."

    def test_conflict_count(self):
        exc = ConflictDetected(["a", "b"])
        assert exc.conflicts == ["a", "b"]
        assert str(exc).endswith("Count: 2")

    def test_not_initialized_names_component(self):
        exc = NotInitializedError("LocalStore")
        assert exc.component == "LocalStore"
        assert "'LocalStore'" in str(exc)
