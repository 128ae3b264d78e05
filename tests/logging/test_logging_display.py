# tests/logging/test_logging_display.py
"""
Tests for goalsync logging setup: DisplayFilter, log_display(), file
handler modes and runtime level changes.
"""

import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from goalsync.logging_config import (
    DEFAULT_LOGGING_CONFIG,
    DisplayFilter,
    LoggingManager,
    configure_logging,
    get_log_file_path,
    log_display,
    set_component_level,
    set_console_level,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def manager():
    """Logging manager reset before and after each test."""
    instance = LoggingManager.get_instance()
    instance.reset()
    yield instance
    instance.reset()


def _make_record(level: int = logging.INFO, display: bool | None = None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="goalsync.test",
        level=level,
        pathname="",
        lineno=0,
        msg="test message",
        args=(),
        exc_info=None,
    )
    if display is not None:
        record.display = display
    return record


# ===========================================================================
# DisplayFilter
# ===========================================================================


class TestDisplayFilter:
    """Unit tests for the DisplayFilter class."""

    def test_display_record_passes_in_quiet_mode(self):
        f = DisplayFilter(console_globally_enabled=False)
        assert f.filter(_make_record(display=True)) is True

    def test_plain_record_blocked_in_quiet_mode(self):
        f = DisplayFilter(console_globally_enabled=False)
        assert f.filter(_make_record()) is False
        assert f.filter(_make_record(display=False)) is False

    def test_display_record_below_min_level_blocked(self):
        f = DisplayFilter(console_globally_enabled=False, display_min_level=logging.WARNING)
        assert f.filter(_make_record(level=logging.INFO, display=True)) is False

    def test_everything_passes_when_console_enabled(self):
        f = DisplayFilter(console_globally_enabled=True)
        assert f.filter(_make_record(level=logging.DEBUG)) is True


# ===========================================================================
# log_display
# ===========================================================================


class TestLogDisplay:
    """Tests for the log_display helper."""

    def test_sets_display_and_keeps_extra(self):
        logger = logging.getLogger("goalsync.test.display")
        records = []
        handler = logging.Handler()
        handler.emit = records.append
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            log_display(logger, logging.INFO, "Synced %d goals", 3, extra={"user": "u1"})
        finally:
            logger.removeHandler(handler)

        assert records[0].display is True
        assert records[0].user == "u1"
        assert records[0].getMessage() == "Synced 3 goals"


# ===========================================================================
# LoggingManager
# ===========================================================================


class TestLoggingManager:
    """Tests for handler installation."""

    def test_configure_once(self, manager):
        assert configure_logging() is None
        handler = manager._console_handler

        configure_logging(config={"console_enabled": True})

        assert manager._console_handler is handler
        assert LoggingManager.is_configured()

    def test_quiet_console_only_shows_display_records(self, manager):
        configure_logging()
        stream = io.StringIO()
        manager._console_handler.setStream(stream)
        logger = logging.getLogger("goalsync.test.quiet")

        logger.warning("hidden")
        log_display(logger, logging.INFO, "Sync completed: %d goals", 2)

        assert stream.getvalue() == "INFO - Sync completed: 2 goals\n"

    def test_single_file_mode_rotates(self, manager, tmp_path):
        path = configure_logging(
            app_name="goaltest",
            config={"file_enabled": True, "file_directory": str(tmp_path), "file_mode": "single"},
        )

        assert path == tmp_path / "goaltest.log"
        assert get_log_file_path() == path
        assert isinstance(manager._file_handler, RotatingFileHandler)

    def test_per_run_file_mode(self, manager, tmp_path):
        path = configure_logging(
            app_name="goaltest",
            config={"file_enabled": True, "file_directory": str(tmp_path), "file_mode": "per_run"},
        )

        assert path.parent == tmp_path
        assert path.name.startswith("goaltest_")
        assert not isinstance(manager._file_handler, RotatingFileHandler)

        logging.getLogger("goalsync.test.file").info("written")
        manager._file_handler.flush()
        assert "written" in path.read_text()

    def test_runtime_levels(self, manager):
        configure_logging(config={"console_enabled": True})

        set_console_level("ERROR")
        set_component_level("goalsync.sync", "DEBUG")

        assert manager._console_handler.level == logging.ERROR
        assert logging.getLogger("goalsync.sync").level == logging.DEBUG
        set_component_level("goalsync.sync", logging.NOTSET)

    def test_component_levels_applied(self, manager):
        configure_logging(force_reconfigure=True)
        for name, level in DEFAULT_LOGGING_CONFIG["components"].items():
            assert logging.getLogger(name).level == logging.getLevelName(level)

    def test_reset_removes_handlers(self, manager):
        configure_logging()
        handler = manager._console_handler

        manager.reset()

        assert handler not in logging.getLogger().handlers
        assert LoggingManager.is_configured() is False
