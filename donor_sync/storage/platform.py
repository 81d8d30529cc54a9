"""
SQLite implementation of the platform donor store.

The donor management application owns donors, their contact rows and their
places. This module exposes the read model and the write operations the sync
engine needs against those tables.
"""

import logging
import sqlite3
from typing import Optional

from donor_sync.storage.db import SQLiteDatabase, from_timestamp, to_timestamp, utcnow
from donor_sync.sync.models import (
    ContactType,
    Donor,
    DonorContact,
    DonorPlace,
    DonorRecord,
)

logger = logging.getLogger(__name__)

PLATFORM_SCHEMA = """
CREATE TABLE IF NOT EXISTS donors (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    nickname TEXT,
    title TEXT,
    wife_name TEXT,
    notes TEXT,
    id_number TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_donors_account ON donors(account_id, is_active);

CREATE TABLE IF NOT EXISTS donor_contacts (
    id TEXT PRIMARY KEY,
    donor_id TEXT NOT NULL REFERENCES donors(id),
    type TEXT NOT NULL CHECK (type IN ('email', 'phone')),
    value TEXT NOT NULL,
    label TEXT,
    is_primary INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_donor_contacts_donor ON donor_contacts(donor_id);

CREATE TABLE IF NOT EXISTS donor_places (
    id TEXT PRIMARY KEY,
    donor_id TEXT NOT NULL REFERENCES donors(id),
    street TEXT NOT NULL DEFAULT '',
    city TEXT NOT NULL DEFAULT '',
    region TEXT NOT NULL DEFAULT '',
    postal_code TEXT NOT NULL DEFAULT '',
    country TEXT NOT NULL DEFAULT '',
    is_primary INTEGER NOT NULL DEFAULT 1,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_donor_places_donor ON donor_places(donor_id);
"""


class PlatformDatabase(SQLiteDatabase):
    """
    Donor, contact and place tables of the platform.

    Usage:
        platform = PlatformDatabase('/path/to/platform.db')
        platform.initialize()

        records = platform.load_active_records('acme')
        platform.save_record(records[donor_id])
    """

    schema = PLATFORM_SCHEMA

    @staticmethod
    def _row_to_donor(row: sqlite3.Row) -> Donor:
        return Donor(
            id=row["id"],
            account_id=row["account_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            nickname=row["nickname"],
            title=row["title"],
            wife_name=row["wife_name"],
            notes=row["notes"],
            id_number=row["id_number"],
            is_active=bool(row["is_active"]),
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> DonorContact:
        return DonorContact(
            id=row["id"],
            donor_id=row["donor_id"],
            type=ContactType(row["type"]),
            value=row["value"],
            label=row["label"],
            is_primary=bool(row["is_primary"]),
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_place(row: sqlite3.Row) -> DonorPlace:
        return DonorPlace(
            id=row["id"],
            donor_id=row["donor_id"],
            street=row["street"],
            city=row["city"],
            region=row["region"],
            postal_code=row["postal_code"],
            country=row["country"],
            is_primary=bool(row["is_primary"]),
            is_active=bool(row["is_active"]),
        )

    # =========================================================================
    # Read model
    # =========================================================================

    def get_donor(self, donor_id: str) -> Optional[Donor]:
        """Get a donor by id, active or not."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM donors WHERE id = ?", (donor_id,)
            ).fetchone()
            return self._row_to_donor(row) if row else None

    def get_record(self, donor_id: str) -> Optional[DonorRecord]:
        """Get a donor with its contacts and primary place, active or not."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM donors WHERE id = ?", (donor_id,)
            ).fetchone()
            if row is None:
                return None
            records = self._attach_related(conn, [self._row_to_donor(row)])
            return records[donor_id]

    def load_active_records(self, account_id: str) -> dict[str, DonorRecord]:
        """
        Load every active donor of an account with its related rows.

        Args:
            account_id: The account identifier

        Returns:
            Dictionary of donor id -> DonorRecord, in donor creation order
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM donors WHERE account_id = ? AND is_active = 1
                ORDER BY created_at, id
                """,
                (account_id,),
            ).fetchall()
            donors = [self._row_to_donor(row) for row in rows]
            records = self._attach_related(conn, donors)

        logger.debug(f"Loaded {len(records)} active donors for {account_id}")
        return records

    def _attach_related(
        self, conn: sqlite3.Connection, donors: list[Donor]
    ) -> dict[str, DonorRecord]:
        records = {donor.id: DonorRecord(donor=donor) for donor in donors}
        if not records:
            return records

        ids = list(records)
        placeholders = ",".join("?" for _ in ids)

        for row in conn.execute(
            f"SELECT * FROM donor_contacts WHERE donor_id IN ({placeholders}) "
            "ORDER BY rowid",
            ids,
        ):
            records[row["donor_id"]].contacts.append(self._row_to_contact(row))

        for row in conn.execute(
            f"SELECT * FROM donor_places WHERE donor_id IN ({placeholders}) "
            "AND is_active = 1 ORDER BY is_primary DESC, rowid",
            ids,
        ):
            record = records[row["donor_id"]]
            if record.place is None:
                record.place = self._row_to_place(row)

        return records

    # =========================================================================
    # Write operations
    # =========================================================================

    def save_record(self, record: DonorRecord) -> DonorRecord:
        """
        Persist a donor record and return it as stored.

        The donor row is inserted or updated (updated_at is bumped), contact
        rows and the place are upserted by id. Rows absent from the record are
        left as they are.

        Args:
            record: Record to persist

        Returns:
            The reloaded DonorRecord
        """
        donor = record.donor
        now = utcnow()

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO donors (
                    id, account_id, first_name, last_name, nickname,
                    title, wife_name, notes, id_number,
                    is_active, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    nickname = excluded.nickname,
                    title = excluded.title,
                    wife_name = excluded.wife_name,
                    notes = excluded.notes,
                    id_number = excluded.id_number,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    donor.id,
                    donor.account_id,
                    donor.first_name or "",
                    donor.last_name or "",
                    donor.nickname,
                    donor.title,
                    donor.wife_name,
                    donor.notes,
                    donor.id_number,
                    int(donor.is_active),
                    to_timestamp(donor.created_at or now),
                    to_timestamp(now),
                ),
            )

            for contact in record.contacts:
                conn.execute(
                    """
                    INSERT INTO donor_contacts (
                        id, donor_id, type, value, label, is_primary, is_active
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        value = excluded.value,
                        label = excluded.label,
                        is_primary = excluded.is_primary,
                        is_active = excluded.is_active
                    """,
                    (
                        contact.id,
                        donor.id,
                        ContactType(contact.type).value,
                        contact.value,
                        contact.label,
                        int(contact.is_primary),
                        int(contact.is_active),
                    ),
                )

            place = record.place
            if place is not None:
                conn.execute(
                    """
                    INSERT INTO donor_places (
                        id, donor_id, street, city, region, postal_code,
                        country, is_primary, is_active
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        street = excluded.street,
                        city = excluded.city,
                        region = excluded.region,
                        postal_code = excluded.postal_code,
                        country = excluded.country,
                        is_primary = excluded.is_primary,
                        is_active = excluded.is_active
                    """,
                    (
                        place.id,
                        donor.id,
                        place.street,
                        place.city,
                        place.region,
                        place.postal_code,
                        place.country,
                        int(place.is_primary),
                        int(place.is_active),
                    ),
                )

        saved = self.get_record(donor.id)
        if saved is None:
            raise sqlite3.DatabaseError(f"Donor {donor.id} missing after save")
        return saved

    def set_donor_active(self, donor_id: str, is_active: bool) -> bool:
        """
        Activate or deactivate a donor.

        Returns:
            True if a donor was updated
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE donors SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), to_timestamp(utcnow()), donor_id),
            )
            return cursor.rowcount > 0
