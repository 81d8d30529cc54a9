"""
Command-line interface for donor_sync.

Provides CLI commands for connecting Google accounts, running and inspecting
donor <-> Google Contacts syncs, the scheduler daemon and the web app.

Usage:
    # Show help
    donor-sync --help

    # Connect a platform account to Google
    donor-sync auth --account acme

    # Run synchronization
    donor-sync sync --account acme
    donor-sync sync --account acme --policy newest_wins --dry-run

    # History and scheduling
    donor-sync logs --account acme
    donor-sync daemon start --interval 6h
"""

import sys
from pathlib import Path

import click

from donor_sync import __version__
from donor_sync.auth.google_auth import AuthenticationError
from donor_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError
from donor_sync.config.settings import Settings
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging
from donor_sync.utils.paths import resolve_config_dir

POLICY_CHOICES = [p.value for p in ConflictPolicy] + ["google_wins"]

account_option = click.option(
    "--account",
    "-a",
    required=True,
    help="Platform account id (letters, digits, '.', '_' or '-').",
)


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def get_service(ctx: click.Context):
    """Return the SyncService for this invocation, creating it on first use."""
    from donor_sync.sync.service import SyncService

    if ctx.obj.get("service") is None:
        ctx.obj["service"] = SyncService.from_settings(ctx.obj["settings"])
    return ctx.obj["service"]


@click.group()
@click.version_option(version=__version__, prog_name="donor-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="DONOR_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.donor-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="DONOR_SYNC_CONFIG_FILE",
    help=f"Configuration file name or path (default: {DEFAULT_CONFIG_FILE}).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Bidirectional donor <-> Google Contacts sync.

    Keeps the platform's donors and a managed Google contact group in step,
    detecting changes on both sides and resolving conflicts by policy.
    """
    ctx.ensure_object(dict)
    resolved_config_dir = resolve_config_dir(config_dir)

    settings = ctx.obj.get("settings")
    if settings is None:
        try:
            settings = Settings.load(resolved_config_dir, config_file)
        except ConfigError as e:
            # Keep the CLI usable with a broken config file
            click.echo(
                click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
            )
            settings = Settings.from_config({}, resolved_config_dir)
        ctx.obj["settings"] = settings

    settings.verbose = verbose or settings.verbose
    ctx.obj["verbose"] = settings.verbose

    log_dir = settings.log_dir or settings.config_dir / "logs"
    setup_logging(
        level=settings.log_level,
        verbose=settings.verbose,
        log_dir=log_dir,
        enable_file_logging=ctx.obj.get("file_logging", True),
    )
    cleanup_old_logs(log_dir=log_dir)


# =============================================================================
# Connection Commands
# =============================================================================


@cli.command("auth")
@account_option
@click.option(
    "--force", is_flag=True, help="Re-authenticate even if already connected."
)
@click.pass_context
def auth_command(ctx: click.Context, account: str, force: bool) -> None:
    """
    Connect a platform account to Google Contacts.

    Opens a browser window to complete the OAuth flow and stores the
    credentials for future syncs.
    """
    logger = get_logger(__name__)
    auth = get_service(ctx).auth

    try:
        if not force and auth.is_connected(account):
            click.echo(click.style(f"{account} is already connected.", fg="green"))
            click.echo("Use --force to re-authenticate.")
            return

        auth.authenticate(account, force_reauth=force)
    except FileNotFoundError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("\nTo get started:", err=True)
        click.echo("1. Go to https://console.cloud.google.com/", err=True)
        click.echo("2. Create a project and enable the People API", err=True)
        click.echo("3. Create OAuth 2.0 credentials (Desktop application)", err=True)
        click.echo(f"4. Download and save as: {auth.credentials_path}", err=True)
        sys.exit(1)
    except (AuthenticationError, ValueError) as e:
        logger.error(f"Authentication failed: {e}")
        _fail(str(e))

    email = auth.get_account_email(account)
    click.echo(
        click.style(f"Connected {account} ({email or 'unknown email'})", fg="green")
    )


@cli.command("status")
@click.option("--account", "-a", default=None, help="Show only this account.")
@click.pass_context
def status_command(ctx: click.Context, account: str | None) -> None:
    """Show connection and last sync time per account."""
    service = get_service(ctx)
    accounts = [account] if account else service.auth.list_accounts()

    click.echo("=== Donor Sync Status ===\n")
    click.echo(f"Configuration directory: {service.settings.config_dir}")
    click.echo(f"Contact group: {service.settings.contact_group_name}")
    click.echo(f"Mappings: {service.sync_db.get_mapping_count()}\n")

    if not accounts:
        click.echo("No accounts connected. Run: donor-sync auth --account <id>")
        return

    for account_id in accounts:
        try:
            status = service.get_status(account_id)
        except ValueError as e:
            _fail(str(e))
        if status["isConnected"]:
            state = click.style("Connected", fg="green")
            email = status["externalAccountEmail"] or "unknown email"
            scheduled = "on" if service.auth.is_sync_enabled(account_id) else "off"
            click.echo(f"{account_id}: {state} ({email}), scheduled sync {scheduled}")
        else:
            click.echo(f"{account_id}: {click.style('Not connected', fg='red')}")
        click.echo(f"  Last synced: {status['lastSyncedAt'] or 'Never'}")


@cli.command("disconnect")
@account_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def disconnect_command(ctx: click.Context, account: str, yes: bool) -> None:
    """
    Disconnect an account from Google.

    Revokes and deletes the stored token. Mappings are kept, so reconnecting
    the same Google account does not create duplicates.
    """
    if not yes and not click.confirm(f"Disconnect {account} from Google Contacts?"):
        click.echo("Aborted.")
        return

    try:
        removed = get_service(ctx).disconnect(account)
    except ValueError as e:
        _fail(str(e))

    if removed:
        click.echo(click.style(f"Disconnected {account}.", fg="green"))
    else:
        click.echo(f"{account} was not connected.")


@cli.command("schedule")
@account_option
@click.option("--enable/--disable", default=True, help="Include in scheduled syncs.")
@click.pass_context
def schedule_command(ctx: click.Context, account: str, enable: bool) -> None:
    """Turn scheduled sync on or off for an account."""
    if not get_service(ctx).auth.set_sync_enabled(account, enable):
        _fail(f"{account} is not connected")
    click.echo(f"Scheduled sync {'enabled' if enable else 'disabled'} for {account}.")


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("sync")
@account_option
@click.option(
    "--policy",
    "-p",
    type=click.Choice(POLICY_CHOICES, case_sensitive=False),
    default=None,
    help="Conflict policy (default: default_policy from config).",
)
@click.option(
    "--dry-run", is_flag=True, help="Show what would change without writing anything."
)
@click.pass_context
def sync_command(
    ctx: click.Context, account: str, policy: str | None, dry_run: bool
) -> None:
    """
    Synchronize an account's donors with its Google contact group.

    Examples:

        # Preview changes
        donor-sync sync --account acme --dry-run

        # Let the most recent edit win conflicts
        donor-sync sync --account acme --policy newest_wins
    """
    from donor_sync.sync.service import NotConnectedError, SyncInProgressError

    logger = get_logger(__name__)
    service = get_service(ctx)

    if dry_run:
        click.echo(click.style("DRY RUN - no changes will be written", fg="yellow"))

    try:
        result = service.trigger_sync(account, policy, dry_run=dry_run)
    except NotConnectedError as e:
        _fail(f"{e}. Run: donor-sync auth --account {account}")
    except (SyncInProgressError, ValueError) as e:
        _fail(str(e))

    from donor_sync.cli.formatters import show_sync_result

    show_sync_result(result)
    logger.debug(f"Sync result: {result.to_dict()}")
    if not result.success:
        sys.exit(1)


@cli.command("logs")
@account_option
@click.option("--limit", "-n", default=10, show_default=True, help="Rows to show (max 50).")
@click.pass_context
def logs_command(ctx: click.Context, account: str, limit: int) -> None:
    """Show recent sync runs, newest first."""
    from donor_sync.cli.formatters import show_logs

    try:
        logs = get_service(ctx).get_logs(account, limit)
    except ValueError as e:
        _fail(str(e))
    show_logs(logs)


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
def daemon_group() -> None:
    """
    Run scheduled syncs in the background.

    Every cycle syncs each connected account with scheduled sync enabled,
    using the platform_wins policy.
    """
    pass


def _pid_file(ctx: click.Context) -> Path | None:
    return ctx.obj["settings"].daemon_pid_file


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Sync interval (e.g. '30m', '6h', '1d'). Defaults to schedule_interval.",
)
@click.option("--no-initial-sync", is_flag=True, help="Wait one interval before the first sync.")
@click.option("--once", is_flag=True, help="Run a single cycle and exit.")
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: str | None, no_initial_sync: bool, once: bool
) -> None:
    """Start the scheduler in the foreground (Ctrl+C or SIGTERM to stop)."""
    from donor_sync.daemon import (
        DaemonAlreadyRunningError,
        DaemonError,
        DaemonScheduler,
        parse_interval,
    )

    settings = ctx.obj["settings"]
    try:
        seconds = parse_interval(interval) if interval else settings.schedule_interval
    except ValueError as e:
        _fail(str(e))

    service = get_service(ctx)
    scheduler = DaemonScheduler(
        service.run_scheduled,
        interval=seconds,
        pid_file=_pid_file(ctx),
        run_immediately=not no_initial_sync,
    )

    if once:
        ok = scheduler.run_cycle()
        sys.exit(0 if ok else 1)

    click.echo(f"Starting daemon with {seconds}s sync interval (Ctrl+C to stop)")
    try:
        scheduler.run()
    except DaemonAlreadyRunningError as e:
        _fail(str(e))
    except DaemonError as e:
        _fail(f"Daemon error: {e}")

    stats = scheduler.stats
    click.echo(
        f"Daemon stopped after {stats.cycles} cycles "
        f"({stats.successful_cycles} ok, {stats.failed_cycles} failed)"
    )


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Ask the running daemon to stop after its current cycle."""
    from donor_sync.daemon import DaemonScheduler

    if DaemonScheduler.stop_running_daemon(_pid_file(ctx)):
        click.echo(click.style("Stop signal sent.", fg="green"))
    else:
        click.echo("No daemon is currently running.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from donor_sync.daemon import PIDFileError, PIDFileManager

    manager = PIDFileManager(_pid_file(ctx))
    try:
        pid = manager.running_pid()
    except PIDFileError as e:
        _fail(str(e))

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')} (PID {pid})")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
    if ctx.obj["verbose"]:
        click.echo(f"PID file: {manager.pid_file}")


# =============================================================================
# Web
# =============================================================================


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=5000, show_default=True, type=int)
@click.pass_context
def serve_command(ctx: click.Context, host: str, port: int) -> None:
    """Serve the sync endpoints and the OAuth callback."""
    from donor_sync.web import create_app

    app = create_app(ctx.obj["settings"], get_service(ctx))
    app.run(host=host, port=port)
