"""
SQLite database module for sync state management.

Provides persistent storage for donor/contact mappings and the sync run log.
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from donor_sync.sync.models import (
    ContactMapping,
    SyncLogEntry,
    SyncLogStatus,
    SyncStatus,
    TriggerType,
)

# Upper bound for get_recent_sync_logs
MAX_SYNC_LOG_LIMIT = 50

# SQL Schema for contact mapping and sync log tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS contact_mapping (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    donor_id TEXT NOT NULL,
    resource_name TEXT NOT NULL DEFAULT '',
    etag TEXT,
    platform_hash TEXT NOT NULL DEFAULT '',
    external_hash TEXT NOT NULL DEFAULT '',
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(account_id, donor_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_contact_mapping_resource
    ON contact_mapping(account_id, resource_name) WHERE resource_name != '';
CREATE INDEX IF NOT EXISTS idx_contact_mapping_account ON contact_mapping(account_id);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    account_id TEXT NOT NULL,
    trigger_type TEXT NOT NULL,
    status TEXT NOT NULL,
    donors_pushed INTEGER NOT NULL DEFAULT 0,
    contacts_pulled INTEGER NOT NULL DEFAULT 0,
    conflicts INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    error_details TEXT,
    duration_ms INTEGER,
    dry_run INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_account ON sync_log(account_id, id);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteDatabase:
    """
    Connection handling shared by the SQLite stores.

    Subclasses set schema; initialize() creates it.

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    schema = ""

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = str(db_path)
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists
        across operations; file databases get a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                # Flask serves requests from worker threads
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
                self._shared_connection.execute("PRAGMA foreign_keys = ON")
            return self._shared_connection

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back and re-raises on error.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_log")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        with self.connection() as conn:
            conn.executescript(self.schema)

    def close(self) -> None:
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None


class SyncDatabase(SQLiteDatabase):
    """
    SQLite store for contact mappings and sync logs.

    Provides methods for:
    - Tracking which Google contact each donor is linked to
    - Storing the per-side content hashes used for change detection
    - Recording one log row per sync run
    """

    schema = SCHEMA

    # =========================================================================
    # Contact Mapping Operations
    # =========================================================================

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> ContactMapping:
        return ContactMapping(
            id=row["id"],
            account_id=row["account_id"],
            donor_id=row["donor_id"],
            resource_name=row["resource_name"],
            etag=row["etag"],
            platform_hash=row["platform_hash"],
            external_hash=row["external_hash"],
            sync_status=SyncStatus(row["sync_status"]),
            last_synced_at=from_timestamp(row["last_synced_at"]),
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
        )

    def get_mappings(self, account_id: str) -> list[ContactMapping]:
        """
        Get all mappings for an account.

        Args:
            account_id: The account identifier

        Returns:
            List of ContactMapping ordered by id
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM contact_mapping WHERE account_id = ? ORDER BY id",
                (account_id,),
            )
            return [self._row_to_mapping(row) for row in cursor.fetchall()]

    def get_mapping_by_donor(
        self, account_id: str, donor_id: str
    ) -> Optional[ContactMapping]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contact_mapping WHERE account_id = ? AND donor_id = ?",
                (account_id, donor_id),
            ).fetchone()
            return self._row_to_mapping(row) if row else None

    def get_mapping_by_resource(
        self, account_id: str, resource_name: str
    ) -> Optional[ContactMapping]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM contact_mapping
                WHERE account_id = ? AND resource_name = ?
                """,
                (account_id, resource_name),
            ).fetchone()
            return self._row_to_mapping(row) if row else None

    def save_mapping(self, mapping: ContactMapping) -> ContactMapping:
        """
        Insert a new mapping or update an existing one.

        A mapping without an id is inserted and receives one. Updates match on
        id; the (account, donor) and (account, resource) pairs stay unique.

        Args:
            mapping: Mapping to persist (modified in place)

        Returns:
            The same mapping with id and timestamps set

        Raises:
            sqlite3.IntegrityError: If another mapping already links the donor
                or the Google contact
        """
        now = utcnow()
        mapping.updated_at = now
        values = (
            mapping.resource_name or "",
            mapping.etag,
            mapping.platform_hash,
            mapping.external_hash,
            SyncStatus(mapping.sync_status).value,
            to_timestamp(mapping.last_synced_at),
            to_timestamp(now),
        )

        with self.connection() as conn:
            if mapping.id is None:
                mapping.created_at = now
                cursor = conn.execute(
                    """
                    INSERT INTO contact_mapping (
                        resource_name, etag, platform_hash, external_hash,
                        sync_status, last_synced_at, updated_at,
                        account_id, donor_id, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values
                    + (mapping.account_id, mapping.donor_id, to_timestamp(now)),
                )
                mapping.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE contact_mapping SET
                        resource_name = ?,
                        etag = ?,
                        platform_hash = ?,
                        external_hash = ?,
                        sync_status = ?,
                        last_synced_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    values + (mapping.id,),
                )
        return mapping

    def get_last_synced_at(self, account_id: str) -> Optional[datetime]:
        """Most recent last_synced_at among synced mappings, if any."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT MAX(last_synced_at) AS last_synced_at FROM contact_mapping
                WHERE account_id = ? AND sync_status = ?
                """,
                (account_id, SyncStatus.SYNCED.value),
            ).fetchone()
            return from_timestamp(row["last_synced_at"]) if row else None

    def get_mapping_count(self, account_id: Optional[str] = None) -> int:
        """
        Get the number of contact mappings.

        Args:
            account_id: Count only this account's mappings when given

        Returns:
            Number of mappings
        """
        with self.connection() as conn:
            if account_id is None:
                row = conn.execute("SELECT COUNT(*) FROM contact_mapping").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM contact_mapping WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
            return int(row[0])

    # =========================================================================
    # Sync Log Operations
    # =========================================================================

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> SyncLogEntry:
        details = json.loads(row["error_details"]) if row["error_details"] else []
        return SyncLogEntry(
            id=row["id"],
            account_id=row["account_id"],
            trigger_type=TriggerType(row["trigger_type"]),
            status=SyncLogStatus(row["status"]),
            donors_pushed=row["donors_pushed"],
            contacts_pulled=row["contacts_pulled"],
            conflicts=row["conflicts"],
            errors=row["errors"],
            error_details=details,
            duration_ms=row["duration_ms"],
            dry_run=bool(row["dry_run"]),
            created_at=from_timestamp(row["created_at"]),
            finished_at=from_timestamp(row["finished_at"]),
        )

    def start_sync_log(
        self,
        account_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        dry_run: bool = False,
    ) -> int:
        """
        Open a log row for a new sync run.

        Returns:
            The log id to pass to update_sync_log / finish_sync_log
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_log (account_id, trigger_type, status, dry_run, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    TriggerType(trigger_type).value,
                    SyncLogStatus.STARTED.value,
                    int(dry_run),
                    to_timestamp(utcnow()),
                ),
            )
            return int(cursor.lastrowid)

    def update_sync_log(self, log_id: int, result: Any) -> None:
        """Store progress counters of a running sync (status unchanged)."""
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_log SET
                    donors_pushed = ?,
                    contacts_pulled = ?,
                    conflicts = ?,
                    errors = ?
                WHERE id = ?
                """,
                (
                    result.donors_pushed,
                    result.contacts_pulled,
                    result.conflicts,
                    result.errors,
                    log_id,
                ),
            )

    def finish_sync_log(
        self, log_id: int, result: Any, status: SyncLogStatus
    ) -> None:
        """
        Close a log row with the final counters.

        Args:
            log_id: Id returned by start_sync_log
            result: SyncResult of the run
            status: COMPLETED or FAILED
        """
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_log SET
                    status = ?,
                    donors_pushed = ?,
                    contacts_pulled = ?,
                    conflicts = ?,
                    errors = ?,
                    error_details = ?,
                    duration_ms = ?,
                    finished_at = ?
                WHERE id = ?
                """,
                (
                    SyncLogStatus(status).value,
                    result.donors_pushed,
                    result.contacts_pulled,
                    result.conflicts,
                    result.errors,
                    json.dumps(list(result.error_details)),
                    result.duration_ms,
                    to_timestamp(utcnow()),
                    log_id,
                ),
            )

    def get_sync_log(self, log_id: int) -> Optional[SyncLogEntry]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_log WHERE id = ?", (log_id,)
            ).fetchone()
            return self._row_to_log(row) if row else None

    def get_recent_sync_logs(
        self, account_id: str, limit: int = 10
    ) -> list[SyncLogEntry]:
        """
        Get the most recent sync runs of an account, newest first.

        Args:
            account_id: The account identifier
            limit: Maximum number of rows, capped at MAX_SYNC_LOG_LIMIT

        Returns:
            List of SyncLogEntry
        """
        limit = max(1, min(int(limit), MAX_SYNC_LOG_LIMIT))
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM sync_log WHERE account_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (account_id, limit),
            )
            return [self._row_to_log(row) for row in cursor.fetchall()]
