"""
Configuration loader module for donor synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of known keys, types and ranges
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from donor_sync.daemon import parse_interval
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.sync.engine import MIN_THROTTLE_INTERVAL
from donor_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Storage
    "database_path": str,
    "platform_database_path": str,
    # Google
    "client_secrets_file": str,
    "contact_group_name": str,
    "auth_timeout": int,
    "request_timeout": (int, float),
    "api_max_retries": int,
    "api_max_members": int,
    # Sync behaviour
    "throttle_interval": (int, float),
    "default_policy": str,
    "manual_cooldown": int,
    # Scheduler
    "schedule_interval": (str, int),
    "daemon_pid_file": str,
    # OAuth web flow
    "state_secret": str,
    "state_ttl": int,
    "redirect_uri": str,
    "ui_sync_route": str,
    # Logging
    "log_dir": str,
    "log_level": str,
    "verbose": bool,
}


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/etc/donor-sync"))
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        config_file: str = DEFAULT_CONFIG_FILE,
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.donor-sync/ or $DONOR_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration types and values.

        Unknown keys are ignored with a debug message.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected_type = VALID_KEYS.get(key)
            if expected_type is None:
                logger.debug(f"Ignoring unknown configuration key: {key}")
                continue
            # bool is an int subclass; only accept it where bool is expected
            if isinstance(value, bool) and expected_type is not bool:
                raise ConfigError(
                    f"Invalid type for '{key}': expected "
                    f"{_type_name(expected_type)}, got bool"
                )
            if not isinstance(value, expected_type):
                raise ConfigError(
                    f"Invalid type for '{key}': expected "
                    f"{_type_name(expected_type)}, got {type(value).__name__}"
                )

        if "default_policy" in config:
            try:
                ConflictPolicy.parse(config["default_policy"])
            except ValueError as e:
                raise ConfigError(str(e)) from e

        if "schedule_interval" in config:
            try:
                interval = parse_interval(config["schedule_interval"])
            except ValueError as e:
                raise ConfigError(f"Invalid schedule_interval: {e}") from e
            if interval < 60:
                raise ConfigError(
                    f"schedule_interval must be at least 60 seconds, got {interval}"
                )

        if "throttle_interval" in config:
            interval = config["throttle_interval"]
            if interval < MIN_THROTTLE_INTERVAL:
                raise ConfigError(
                    f"throttle_interval must be >= {MIN_THROTTLE_INTERVAL}, "
                    f"got {interval}"
                )

        positive_keys = [
            "auth_timeout",
            "request_timeout",
            "api_max_retries",
            "api_max_members",
            "state_ttl",
        ]
        for key in positive_keys:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "manual_cooldown" in config and config["manual_cooldown"] < 0:
            raise ConfigError(
                f"manual_cooldown must be >= 0, got {config['manual_cooldown']}"
            )

        if "ui_sync_route" in config and not config["ui_sync_route"].startswith(
            ("/", "http://", "https://")
        ):
            raise ConfigError(
                f"ui_sync_route must be a path or URL, got {config['ui_sync_route']}"
            )

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
