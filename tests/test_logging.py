"""
Tests for the logging configuration module.
"""

import logging
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from donor_sync.utils.logging import (
    CONSOLE_FORMAT,
    DATE_FORMAT,
    LOG_FILE_PREFIX,
    LOGGER_NAME,
    VERBOSE_FORMAT,
    ColoredFormatter,
    cleanup_old_logs,
    get_log_file_path,
    get_log_level_from_env,
    get_logger,
    parse_log_level,
    set_log_level,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Restore the package logger after each test."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


class TestConstants:
    """Tests for module constants."""

    def test_verbose_format_has_source_location(self):
        """Test VERBOSE_FORMAT includes file and line."""
        assert "%(filename)s" in VERBOSE_FORMAT
        assert "%(lineno)d" in VERBOSE_FORMAT

    def test_console_format_has_message(self):
        """Test CONSOLE_FORMAT includes the message."""
        assert "%(message)s" in CONSOLE_FORMAT


class TestParseLogLevel:
    """Tests for parse_log_level."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("debug", logging.DEBUG),
            (" INFO ", logging.INFO),
            ("warn", logging.WARNING),
            ("Error", logging.ERROR),
            ("critical", logging.CRITICAL),
        ],
    )
    def test_known_names(self, name, expected):
        """Test level names are case-insensitive."""
        assert parse_log_level(name) == expected

    def test_unknown_name_uses_default(self):
        """Test that an unknown name falls back to the default."""
        assert parse_log_level("LOUD") == logging.INFO
        assert parse_log_level("LOUD", default=logging.ERROR) == logging.ERROR


class TestGetLogLevelFromEnv:
    """Tests for get_log_level_from_env function."""

    @pytest.mark.parametrize("value", ["1", "true", "yes"])
    def test_debug_mode_from_env(self, value):
        """Test debug mode enabled by DONOR_SYNC_DEBUG."""
        with patch.dict(os.environ, {"DONOR_SYNC_DEBUG": value}):
            assert get_log_level_from_env() == logging.DEBUG

    @patch.dict(
        os.environ,
        {"DONOR_SYNC_LOG_LEVEL": "WARNING", "DONOR_SYNC_DEBUG": ""},
        clear=False,
    )
    def test_log_level_warning(self):
        """Test WARNING log level from env."""
        assert get_log_level_from_env() == logging.WARNING

    @patch.dict(
        os.environ,
        {"DONOR_SYNC_LOG_LEVEL": "ERROR", "DONOR_SYNC_DEBUG": "1"},
        clear=False,
    )
    def test_debug_wins_over_level(self):
        """Test DONOR_SYNC_DEBUG takes priority."""
        assert get_log_level_from_env() == logging.DEBUG

    @patch.dict(
        os.environ,
        {"DONOR_SYNC_LOG_LEVEL": "INVALID", "DONOR_SYNC_DEBUG": ""},
        clear=False,
    )
    def test_invalid_level_defaults_to_info(self):
        """Test invalid log level defaults to INFO."""
        assert get_log_level_from_env() == logging.INFO


class TestGetLogFilePath:
    """Tests for get_log_file_path function."""

    @patch.dict(os.environ, {"DONOR_SYNC_LOG_FILE": "/custom/path/app.log"})
    def test_custom_log_file_from_env(self):
        """Test custom log file path from environment."""
        assert get_log_file_path() == Path("/custom/path/app.log")

    @pytest.mark.parametrize("value", ["none", "disabled", ""])
    def test_log_file_disabled(self, value):
        """Test file logging can be switched off from the environment."""
        with patch.dict(os.environ, {"DONOR_SYNC_LOG_FILE": value}):
            assert get_log_file_path() is None

    def test_daily_file_in_log_dir(self, tmp_path, monkeypatch):
        """Test that the default file is a dated file in the log directory."""
        monkeypatch.delenv("DONOR_SYNC_LOG_FILE", raising=False)

        path = get_log_file_path(tmp_path)

        assert path.parent == tmp_path
        assert path.name.startswith(LOG_FILE_PREFIX)
        assert path.suffix == ".log"

    def test_default_log_dir_under_config_dir(self, tmp_path, monkeypatch):
        """Test that logs default to <config_dir>/logs."""
        monkeypatch.delenv("DONOR_SYNC_LOG_FILE", raising=False)
        monkeypatch.setenv("DONOR_SYNC_CONFIG_DIR", str(tmp_path))

        path = get_log_file_path()

        assert path.parent == tmp_path.resolve() / "logs"


class TestColoredFormatter:
    """Tests for ColoredFormatter class."""

    def make_record(self, level=logging.INFO):
        return logging.LogRecord(
            name="test",
            level=level,
            pathname="test.py",
            lineno=1,
            msg="Test message",
            args=(),
            exc_info=None,
        )

    def test_formatter_with_colors_disabled(self):
        """Test formatter with colors explicitly disabled."""
        formatter = ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT, use_colors=False)
        assert formatter.use_colors is False

    @patch("sys.stderr")
    def test_formatter_non_tty(self, mock_stderr):
        """Test formatter detects non-TTY and disables colors."""
        mock_stderr.isatty.return_value = False
        formatter = ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT, use_colors=True)
        assert formatter.use_colors is False

    @patch.dict(os.environ, {"NO_COLOR": "1"})
    @patch("sys.stderr")
    def test_formatter_respects_no_color_env(self, mock_stderr):
        """Test formatter respects NO_COLOR environment variable."""
        mock_stderr.isatty.return_value = True
        formatter = ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT, use_colors=True)
        assert formatter.use_colors is False

    @patch.dict(os.environ, {"NO_COLOR": "", "TERM": "xterm-256color"})
    @patch("sys.stderr")
    def test_colors_applied_on_tty(self, mock_stderr):
        """Test that level names are colored on a capable terminal."""
        mock_stderr.isatty.return_value = True
        formatter = ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT, use_colors=True)
        record = self.make_record(logging.ERROR)

        result = formatter.format(record)

        assert "\033[31m" in result
        # the original record is not modified
        assert record.levelname == "ERROR"

    def test_format_record_without_colors(self):
        """Test formatting a record without colors."""
        formatter = ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT, use_colors=False)

        result = formatter.format(self.make_record())

        assert result == "INFO: Test message"


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self):
        """Test setup_logging returns the package logger."""
        logger = setup_logging(enable_file_logging=False)
        assert logger.name == LOGGER_NAME
        assert logger.propagate is False

    def test_verbose(self):
        """Test setup_logging with verbose mode."""
        logger = setup_logging(level=logging.ERROR, verbose=True, enable_file_logging=False)
        assert logger.level == logging.DEBUG

    def test_explicit_level(self):
        """Test setup_logging with explicit level."""
        logger = setup_logging(level=logging.WARNING, enable_file_logging=False)
        assert logger.level == logging.WARNING

    def test_handlers_replaced(self):
        """Test repeated setup does not accumulate handlers."""
        setup_logging(enable_file_logging=False)
        logger = setup_logging(enable_file_logging=False)
        assert len(logger.handlers) == 1

    def test_file_logging(self, tmp_path):
        """Test setup_logging with an explicit file."""
        log_file = tmp_path / "nested" / "test.log"

        logger = setup_logging(log_file=log_file, use_colors=False)
        logger.warning("sync finished with errors")

        assert len(logger.handlers) == 2
        for handler in logger.handlers:
            handler.flush()
        assert "sync finished with errors" in log_file.read_text()

    def test_file_logging_in_log_dir(self, tmp_path, monkeypatch):
        """Test that a daily file is created in log_dir."""
        monkeypatch.delenv("DONOR_SYNC_LOG_FILE", raising=False)

        setup_logging(log_dir=tmp_path, use_colors=False)

        assert len(list(tmp_path.glob(f"{LOG_FILE_PREFIX}*.log"))) == 1

    def test_unwritable_log_file(self, tmp_path):
        """Test that a failing file handler leaves console logging working."""
        blocker = tmp_path / "file"
        blocker.write_text("")

        logger = setup_logging(log_file=blocker / "app.log", use_colors=False)

        assert len(logger.handlers) == 1


class TestGetLogger:
    """Tests for get_logger function."""

    def test_package_name_kept(self):
        """Test names inside the package are unchanged."""
        assert get_logger("donor_sync.sync.engine").name == "donor_sync.sync.engine"

    def test_prefix_added(self):
        """Test other names are placed under the package logger."""
        logger = get_logger("mymodule")
        assert logger.name == "donor_sync.mymodule"
        assert logger.parent.name == LOGGER_NAME


class TestSetLogLevel:
    """Tests for set_log_level function."""

    def test_console_changes_file_stays_debug(self, tmp_path):
        """Test set_log_level leaves file handlers at DEBUG."""
        logger = setup_logging(log_file=tmp_path / "app.log", use_colors=False)

        set_log_level(logging.ERROR)

        assert logger.level == logging.ERROR
        levels = {type(h).__name__: h.level for h in logger.handlers}
        assert levels["StreamHandler"] == logging.ERROR
        assert levels["FileHandler"] == logging.DEBUG


class TestCleanupOldLogs:
    """Tests for cleanup_old_logs."""

    def make_logs(self, directory, count):
        now = time.time()
        for i in range(count):
            path = directory / f"{LOG_FILE_PREFIX}2026010{i}.log"
            path.write_text("x")
            os.utime(path, (now - i * 100, now - i * 100))

    def test_keeps_newest(self, tmp_path):
        """Test that only the newest files are kept."""
        self.make_logs(tmp_path, 5)

        assert cleanup_old_logs(tmp_path, keep_count=2) == 3
        remaining = sorted(p.name for p in tmp_path.iterdir())
        assert remaining == [f"{LOG_FILE_PREFIX}20260100.log", f"{LOG_FILE_PREFIX}20260101.log"]

    def test_other_files_untouched(self, tmp_path):
        """Test that unrelated files are never deleted."""
        self.make_logs(tmp_path, 3)
        (tmp_path / "notes.txt").write_text("keep")

        cleanup_old_logs(tmp_path, keep_count=1)

        assert (tmp_path / "notes.txt").exists()

    def test_disabled(self, tmp_path):
        """Test that keep_count=0 disables cleanup."""
        self.make_logs(tmp_path, 3)

        assert cleanup_old_logs(tmp_path, keep_count=0) == 0

    def test_missing_directory(self, tmp_path):
        """Test a missing directory is not an error."""
        assert cleanup_old_logs(tmp_path / "missing") == 0
