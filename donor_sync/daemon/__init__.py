"""
donor_sync.daemon - Scheduled sync runner

Runs a sync for every connected account at a fixed interval until stopped.
"""

import re

_INTERVAL_PATTERN = re.compile(r"^(\d+)\s*([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(interval: str | int) -> int:
    """Parse an interval such as "30s", "15m", "6h", "1d" or 3600 into seconds.

    Plain integers and numeric strings are taken as seconds.

    Raises:
        ValueError: If the value is not a non-negative interval.
    """
    if isinstance(interval, bool) or not isinstance(interval, (int, str)):
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if isinstance(interval, int):
        seconds = interval
    else:
        text = interval.strip().lower()
        if text.isdigit():
            seconds = int(text)
        else:
            match = _INTERVAL_PATTERN.match(text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '5m', '1h', or '1d'."
                )
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]

    if seconds < 0:
        raise ValueError(f"Interval must not be negative, got {interval}")
    return seconds


# Imported after parse_interval: config.loader imports it from this package
from donor_sync.daemon.scheduler import (  # noqa: E402
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
    default_pid_file,
)

__all__ = [
    "parse_interval",
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "default_pid_file",
]
