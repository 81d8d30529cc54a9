"""CLI output formatting functions.

Displays sync results, conflict details and sync log history.
"""

from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from donor_sync.sync.engine import SyncResult

# Rows shown before collapsing into "... and N more"
MAX_LISTED = 10


def show_sync_result(result: "SyncResult") -> None:
    """Print the counters of a sync run, colored by outcome."""
    color = "green" if result.success and not result.errors else "yellow"
    if not result.success:
        color = "red"
    click.echo(click.style(result.summary(), fg=color))

    if result.conflict_details:
        show_conflicts(result)


def show_conflicts(result: "SyncResult") -> None:
    click.echo("\n=== Conflicts ===")
    for conflict in result.conflict_details[:MAX_LISTED]:
        click.echo(
            f"  {conflict.donor_name} [{conflict.field}] "
            f"platform={conflict.platform_value!r} "
            f"google={conflict.external_value!r} -> {conflict.resolution}"
        )
    if len(result.conflict_details) > MAX_LISTED:
        click.echo(f"  ... and {len(result.conflict_details) - MAX_LISTED} more")


def show_logs(logs: list[dict[str, Any]]) -> None:
    """Print sync log rows as produced by SyncService.get_logs."""
    if not logs:
        click.echo("No sync runs recorded yet.")
        return

    for entry in logs:
        status = entry["status"]
        color = {"completed": "green", "failed": "red"}.get(status, "yellow")
        dry_run = " (dry run)" if entry.get("dryRun") else ""
        click.echo(
            f"{entry.get('createdAt') or '-'}  {entry['triggerType']:<9} "
            f"{click.style(status, fg=color)}{dry_run}  "
            f"pushed={entry['donorsPushed']} pulled={entry['contactsPulled']} "
            f"conflicts={entry['conflicts']} errors={entry['errors']}"
        )
        for detail in entry.get("errorDetails", [])[:MAX_LISTED]:
            click.echo(f"    - {detail}")
