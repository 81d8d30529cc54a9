"""
Typed runtime settings.

Settings are built from the validated YAML configuration plus a few
environment overrides. Relative paths are resolved against the config
directory.

Example config.yaml:

    database_path: sync.db
    platform_database_path: platform.db
    contact_group_name: Donation Platform
    throttle_interval: 1.5
    request_timeout: 30
    schedule_interval: 6h
    default_policy: platform_wins
    manual_cooldown: 300
    redirect_uri: https://donors.example.org/oauth2callback
    ui_sync_route: /google-sync
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from donor_sync.config.loader import ConfigError, ConfigLoader
from donor_sync.daemon import parse_interval
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.sync.engine import MIN_THROTTLE_INTERVAL
from donor_sync.utils.logging import parse_log_level
from donor_sync.utils.paths import resolve_config_dir

logger = logging.getLogger(__name__)

DEFAULT_CONTACT_GROUP_NAME = "Donation Platform"
DEFAULT_SCHEDULE_INTERVAL = "6h"
DEFAULT_MANUAL_COOLDOWN = 300  # seconds
DEFAULT_STATE_TTL = 600  # seconds
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_REDIRECT_URI = "http://localhost:5000/oauth2callback"
DEFAULT_UI_SYNC_ROUTE = "/google-sync"

# Environment overrides
ENV_STATE_SECRET = "DONOR_SYNC_STATE_SECRET"
ENV_REDIRECT_URI = "DONOR_SYNC_REDIRECT_URI"


def _resolve_path(config_dir: Path, value: str | None, default: str) -> Path:
    path = Path(value or default).expanduser()
    return path if path.is_absolute() else config_dir / path


@dataclass
class Settings:
    """
    Runtime settings for the sync service, web app, daemon and CLI.

    Attributes:
        config_dir: Directory holding config.yaml, tokens and databases
        database_path: SQLite file for mappings and sync logs
        platform_database_path: SQLite file for the donor tables
        client_secrets_file: OAuth client secrets downloaded from Google
        contact_group_name: Name of the managed Google contact group
        throttle_interval: Seconds between two mutating Google calls
        request_timeout: Socket timeout per Google request
        schedule_interval: Seconds between scheduled runs
        default_policy: Conflict policy used when none is given
        manual_cooldown: Minimum seconds between manual triggers per account
        state_secret: Signing secret for the OAuth state parameter
        state_ttl: Seconds an OAuth state stays valid
        redirect_uri: OAuth callback URL registered with Google
        ui_sync_route: Where the OAuth callback sends the browser
    """

    config_dir: Path
    database_path: Path
    platform_database_path: Path
    client_secrets_file: Path
    contact_group_name: str = DEFAULT_CONTACT_GROUP_NAME
    throttle_interval: float = MIN_THROTTLE_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    auth_timeout: int = 10
    api_max_retries: int = 5
    api_max_members: int = 10000
    schedule_interval: int = 6 * 3600
    daemon_pid_file: Path | None = None
    default_policy: ConflictPolicy = ConflictPolicy.PLATFORM_WINS
    manual_cooldown: int = DEFAULT_MANUAL_COOLDOWN
    state_secret: str = field(default="", repr=False)
    state_ttl: int = DEFAULT_STATE_TTL
    redirect_uri: str = DEFAULT_REDIRECT_URI
    ui_sync_route: str = DEFAULT_UI_SYNC_ROUTE
    log_dir: Path | None = None
    log_level: int = logging.INFO
    verbose: bool = False

    @classmethod
    def from_config(
        cls, config: dict[str, Any] | None, config_dir: Path | str | None = None
    ) -> Settings:
        """
        Build settings from a validated configuration dictionary.

        Args:
            config: Values loaded by ConfigLoader (may be empty or None)
            config_dir: Base directory for relative paths

        Returns:
            Settings instance

        Raises:
            ConfigError: If a value cannot be interpreted
        """
        config = dict(config or {})
        base = resolve_config_dir(config_dir)

        try:
            policy = ConflictPolicy.parse(config.get("default_policy", "platform_wins"))
            interval = parse_interval(
                config.get("schedule_interval", DEFAULT_SCHEDULE_INTERVAL)
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

        state_secret = os.environ.get(ENV_STATE_SECRET) or config.get("state_secret")
        if not state_secret:
            # Valid for this process only: pending OAuth flows fail after a restart
            logger.warning(
                f"No state_secret configured; set {ENV_STATE_SECRET} to keep OAuth "
                "links valid across restarts"
            )
            state_secret = secrets.token_hex(32)

        pid_file = config.get("daemon_pid_file")
        log_dir = config.get("log_dir")

        return cls(
            config_dir=base,
            database_path=_resolve_path(base, config.get("database_path"), "sync.db"),
            platform_database_path=_resolve_path(
                base, config.get("platform_database_path"), "platform.db"
            ),
            client_secrets_file=_resolve_path(
                base, config.get("client_secrets_file"), "credentials.json"
            ),
            contact_group_name=config.get(
                "contact_group_name", DEFAULT_CONTACT_GROUP_NAME
            ),
            throttle_interval=max(
                float(config.get("throttle_interval", MIN_THROTTLE_INTERVAL)),
                MIN_THROTTLE_INTERVAL,
            ),
            request_timeout=float(
                config.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
            ),
            auth_timeout=int(config.get("auth_timeout", 10)),
            api_max_retries=int(config.get("api_max_retries", 5)),
            api_max_members=int(config.get("api_max_members", 10000)),
            schedule_interval=interval,
            daemon_pid_file=_resolve_path(base, pid_file, "") if pid_file else None,
            default_policy=policy,
            manual_cooldown=int(config.get("manual_cooldown", DEFAULT_MANUAL_COOLDOWN)),
            state_secret=state_secret,
            state_ttl=int(config.get("state_ttl", DEFAULT_STATE_TTL)),
            redirect_uri=os.environ.get(ENV_REDIRECT_URI)
            or config.get("redirect_uri", DEFAULT_REDIRECT_URI),
            ui_sync_route=config.get("ui_sync_route", DEFAULT_UI_SYNC_ROUTE),
            log_dir=_resolve_path(base, log_dir, "") if log_dir else None,
            log_level=parse_log_level(config.get("log_level", "INFO")),
            verbose=bool(config.get("verbose", False)),
        )

    @classmethod
    def load(
        cls, config_dir: Path | str | None = None, config_file: str | None = None
    ) -> Settings:
        """
        Load, validate and convert the configuration file.

        Raises:
            ConfigError: If the file cannot be parsed or is invalid
        """
        loader = (
            ConfigLoader(config_dir=config_dir, config_file=config_file)
            if config_file
            else ConfigLoader(config_dir=config_dir)
        )
        return cls.from_config(loader.load_and_validate(), loader.config_dir)

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for display; the state secret is masked."""
        data = asdict(self)
        data["default_policy"] = self.default_policy.value
        data["state_secret"] = "***" if self.state_secret else ""
        return {k: str(v) if isinstance(v, Path) else v for k, v in data.items()}
