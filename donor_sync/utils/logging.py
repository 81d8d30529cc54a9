"""
Logging configuration module for donor_sync.

Provides centralized logging configuration with support for:
- Console and daily file logging
- Configurable log levels via environment variables
- Verbose mode for detailed output
- Colored console output when the terminal supports it
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from donor_sync.utils.paths import resolve_config_dir

# Root of the package logger hierarchy
LOGGER_NAME = "donor_sync"

# Default log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Simplified format for console
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format (includes source location)
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_PREFIX = "donor_sync_"

# Environment variable names
ENV_LOG_LEVEL = "DONOR_SYNC_LOG_LEVEL"
ENV_DEBUG = "DONOR_SYNC_DEBUG"
ENV_LOG_FILE = "DONOR_SYNC_LOG_FILE"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"

        return super().format(record)


def parse_log_level(value: str, default: int = logging.INFO) -> int:
    """Map a level name such as "debug" to its logging constant."""
    return _LEVELS.get(value.strip().upper(), default)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    DONOR_SYNC_DEBUG wins over DONOR_SYNC_LOG_LEVEL.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return parse_log_level(os.environ.get(ENV_LOG_LEVEL, "INFO"))


def default_log_dir() -> Path:
    return resolve_config_dir() / "logs"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from the environment or the log directory.

    Returns:
        Path to today's log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    directory = log_dir or default_log_dir()
    return directory / f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the donor_sync application.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, log at DEBUG with source locations.
        log_dir: Directory for daily log files (default <config_dir>/logs).
        log_file: Explicit log file path; overrides log_dir.
        enable_file_logging: If False, only log to the console.
        use_colors: Colored console output when supported.

    Returns:
        The donor_sync package logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path('/var/log/donor-sync'))
        setup_logging(enable_file_logging=False)
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file or get_log_file_path(log_dir)
        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)  # always capture debug in file
                file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete old daily log files, keeping the most recent ones.

    Args:
        log_dir: Directory containing log files (default <config_dir>/logs)
        keep_count: Number of files to keep; 0 disables cleanup

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted_count = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted_count += 1
        except OSError as e:
            logging.getLogger(LOGGER_NAME).debug(f"Could not delete {old_log}: {e}")

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the donor_sync hierarchy.

    Names outside the package are prefixed with "donor_sync.".
    """
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console logging level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "parse_log_level",
    "LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
