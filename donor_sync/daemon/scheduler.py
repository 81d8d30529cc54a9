"""
Scheduler that calls the sync service on a timer.

The daemon owns no sync logic: each cycle calls a callback (normally
SyncService.run_scheduled) and records the outcome. SIGTERM/SIGINT stop it
between cycles, and a PID file prevents two daemons sharing a config dir.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from donor_sync.utils.paths import resolve_config_dir

logger = logging.getLogger(__name__)

PID_FILE_NAME = "daemon.pid"


def default_pid_file() -> Path:
    return resolve_config_dir() / PID_FILE_NAME


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when the PID file cannot be read or written."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when another daemon already owns the PID file."""

    pass


@dataclass
class DaemonStats:
    """Counters for the current daemon process."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


class PIDFileManager:
    """
    Owns the daemon's PID file.

    A PID file whose process is gone is treated as stale and replaced.
    """

    def __init__(self, pid_file: Path | None = None):
        self.pid_file = Path(pid_file) if pid_file else default_pid_file()

    def read(self) -> int | None:
        """
        Read the stored PID.

        Raises:
            PIDFileError: If the file exists but does not hold a PID
        """
        try:
            content = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content!r}") from e

    def running_pid(self) -> int | None:
        """PID of the live process owning the file, if any."""
        pid = self.read()
        if pid is not None and _process_exists(pid):
            return pid
        return None

    def create(self) -> None:
        """
        Write the current PID.

        Raises:
            DaemonAlreadyRunningError: If a live daemon owns the file
            PIDFileError: If the file cannot be written
        """
        existing = self.read()
        if existing is not None:
            if _process_exists(existing):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing}"
                )
            logger.warning(f"Replacing stale PID file for process {existing}")

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(os.getpid()))
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e
        logger.debug(f"Created PID file {self.pid_file}")

    def remove(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e
        logger.debug(f"Removed PID file {self.pid_file}")


class DaemonScheduler:
    """
    Runs a sync callback every `interval` seconds until stopped.

    Usage:
        service = SyncService.from_settings(settings)
        scheduler = DaemonScheduler(service.run_scheduled, interval=6 * 3600)
        scheduler.run()  # blocks until SIGTERM/SIGINT

    Attributes:
        interval: Seconds between the start of two cycles
        stats: Counters for this process
    """

    def __init__(
        self,
        callback: Callable[[], bool],
        interval: int = 6 * 3600,
        pid_file: Path | None = None,
        run_immediately: bool = True,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the scheduler.

        Args:
            callback: Called once per cycle; returns True on success
            interval: Seconds between cycles
            pid_file: PID file path (default <config_dir>/daemon.pid)
            run_immediately: Run a cycle at start instead of waiting one interval
            install_signal_handlers: Stop on SIGTERM/SIGINT (main thread only)
        """
        self.callback = callback
        self.interval = interval
        self.run_immediately = run_immediately
        self.install_signal_handlers = install_signal_handlers
        self.pid_manager = PIDFileManager(pid_file)
        self.stats = DaemonStats()
        self._stop = threading.Event()
        self._previous_handlers: dict[int, Any] = {}

    @property
    def pid_file(self) -> Path:
        return self.pid_manager.pid_file

    def run_cycle(self) -> bool:
        """Run the callback once and record the outcome; never raises."""
        self.stats.cycles += 1
        self.stats.last_cycle_at = datetime.now(timezone.utc)
        logger.info(f"Starting scheduled sync (cycle #{self.stats.cycles})")

        try:
            ok = bool(self.callback())
        except Exception as e:
            logger.exception(f"Scheduled sync raised: {e}")
            self.stats.last_error = str(e)
            ok = False

        if ok:
            self.stats.successful_cycles += 1
            self.stats.last_error = None
            logger.info("Scheduled sync completed")
        else:
            self.stats.failed_cycles += 1
            logger.warning("Scheduled sync completed with failures")
        return ok

    def _handle_signal(self, signum: int, frame: object) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, stopping after current cycle")
        self._stop.set()

    def _install_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def run(self) -> None:
        """
        Run cycles until stop() is called or a shutdown signal arrives.

        Raises:
            DaemonAlreadyRunningError: If another daemon owns the PID file
            PIDFileError: If the PID file cannot be written
        """
        self.pid_manager.create()
        if self.install_signal_handlers:
            self._install_handlers()
        self._stop.clear()
        self.stats = DaemonStats()
        logger.info(
            f"Daemon started (PID {os.getpid()}, interval {self.interval}s, "
            f"PID file {self.pid_file})"
        )

        try:
            if self.run_immediately:
                self.run_cycle()
            while not self._stop.wait(self.interval):
                self.run_cycle()
        finally:
            if self.install_signal_handlers:
                self._restore_handlers()
            self.pid_manager.remove()
            logger.info("Daemon stopped")

    def stop(self) -> None:
        self._stop.set()

    @staticmethod
    def stop_running_daemon(pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the daemon owning the PID file.

        Returns:
            True if a signal was sent
        """
        pid = PIDFileManager(pid_file).running_pid()
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False
        logger.info(f"Sent SIGTERM to daemon (PID {pid})")
        return True
