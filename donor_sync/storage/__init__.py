"""
donor_sync.storage - SQLite persistence

Mapping store, sync log and the platform donor tables.
"""

from donor_sync.storage.db import SyncDatabase
from donor_sync.storage.platform import PlatformDatabase

__all__ = ["PlatformDatabase", "SyncDatabase"]
