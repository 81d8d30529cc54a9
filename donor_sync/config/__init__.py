"""
donor_sync.config - Configuration management module

Contains configuration loading, validation, and typed settings.
"""

from donor_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from donor_sync.config.settings import Settings

__all__ = ["DEFAULT_CONFIG_FILE", "ConfigError", "ConfigLoader", "Settings"]
