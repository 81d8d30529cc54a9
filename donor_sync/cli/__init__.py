"""CLI package for donor_sync."""

from donor_sync.cli.formatters import show_conflicts, show_logs, show_sync_result
from donor_sync.cli.main import cli, get_service

__all__ = [
    "cli",
    "get_service",
    "show_conflicts",
    "show_logs",
    "show_sync_result",
]
