"""
Data models shared by the sync engine and its stores.

Platform side:
- Donor, DonorContact, DonorPlace: rows owned by the donor management layer
- DonorRecord: a donor projected together with its active contacts and
  primary place, the unit the engine hashes and maps

Sync bookkeeping:
- ContactMapping: the durable link between a donor and a Google contact
- SyncLogEntry: one row per sync run
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class SyncStatus(str, Enum):
    """State of a single donor/contact mapping."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class TriggerType(str, Enum):
    """What started a sync run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    INITIAL = "initial"


class SyncLogStatus(str, Enum):
    """Lifecycle of a sync run."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class ContactType(str, Enum):
    """Kind of value stored in a DonorContact row."""

    EMAIL = "email"
    PHONE = "phone"


@dataclass
class Donor:
    """
    A platform donor.

    Attributes:
        id: Stable platform identifier, also written to Google as the
            back-reference
        account_id: Account (tenant) the donor belongs to
        first_name: Given name
        last_name: Family name
        nickname: Optional nickname
        title: Honorific such as "Dr" or "Rabbi"
        wife_name: Name of the donor's wife, synced as a spouse relation
        notes: Free-text notes
        id_number: National or other identity number
        is_active: Inactive donors are never synced
        updated_at: Last modification time, used by newest_wins
    """

    id: str
    account_id: str
    first_name: str = ""
    last_name: str = ""
    nickname: Optional[str] = None
    title: Optional[str] = None
    wife_name: Optional[str] = None
    notes: Optional[str] = None
    id_number: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        parts = [p for p in [self.first_name, self.last_name] if p]
        return " ".join(parts)


@dataclass
class DonorContact:
    """An email address or phone number attached to a donor."""

    id: str
    donor_id: str
    type: ContactType
    value: str
    label: Optional[str] = None
    is_primary: bool = False
    is_active: bool = True


@dataclass
class DonorPlace:
    """A postal address attached to a donor."""

    id: str
    donor_id: str
    street: str = ""
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = ""
    is_primary: bool = True
    is_active: bool = True

    def is_empty(self) -> bool:
        return not any(
            [self.street, self.city, self.region, self.postal_code, self.country]
        )


@dataclass
class DonorRecord:
    """
    A donor with the related rows the sync engine maps to Google.

    contacts holds every contact row the store returned; only active rows are
    projected to Google. place is the primary place, if any.
    """

    donor: Donor
    contacts: list[DonorContact] = field(default_factory=list)
    place: Optional[DonorPlace] = None

    @property
    def id(self) -> str:
        return self.donor.id

    def active_contacts(self, contact_type: ContactType) -> list[DonorContact]:
        """Active contacts of one type, primary first, otherwise in stored order."""
        rows = [c for c in self.contacts if c.type == contact_type and c.is_active]
        return sorted(rows, key=lambda c: not c.is_primary)

    @property
    def emails(self) -> list[DonorContact]:
        return self.active_contacts(ContactType.EMAIL)

    @property
    def phones(self) -> list[DonorContact]:
        return self.active_contacts(ContactType.PHONE)

    def copy(self) -> "DonorRecord":
        """Copy deep enough that edits never touch the original rows."""
        return DonorRecord(
            donor=replace(self.donor),
            contacts=[replace(c) for c in self.contacts],
            place=replace(self.place) if self.place else None,
        )


@dataclass
class ContactMapping:
    """
    Durable link between one donor and one Google contact for an account.

    platform_hash and external_hash are the content hashes of each side as
    of the last successful sync; a mismatch against a freshly computed hash
    means that side changed since.
    """

    account_id: str
    donor_id: str
    resource_name: str = ""
    etag: Optional[str] = None
    platform_hash: str = ""
    external_hash: str = ""
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SyncLogEntry:
    """A persisted record of one sync run."""

    id: int
    account_id: str
    trigger_type: TriggerType
    status: SyncLogStatus
    donors_pushed: int = 0
    contacts_pulled: int = 0
    conflicts: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    duration_ms: Optional[int] = None
    dry_run: bool = False
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "triggerType": self.trigger_type.value,
            "status": self.status.value,
            "donorsPushed": self.donors_pushed,
            "contactsPulled": self.contacts_pulled,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "errorDetails": list(self.error_details),
            "duration": self.duration_ms,
            "dryRun": self.dry_run,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
