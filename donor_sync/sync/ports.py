"""
Interfaces the sync engine depends on.

The engine never talks to SQLite or the People API directly; it is handed
objects satisfying these protocols. SyncDatabase, PlatformDatabase and
PeopleAPI are the shipped implementations.
"""

from typing import Any, Optional, Protocol

from donor_sync.sync.models import (
    ContactMapping,
    Donor,
    DonorRecord,
    SyncLogEntry,
    SyncLogStatus,
    TriggerType,
)
from donor_sync.sync.person import ExternalPerson


class MappingStore(Protocol):
    def get_mappings(self, account_id: str) -> list[ContactMapping]: ...

    def get_mapping_by_donor(
        self, account_id: str, donor_id: str
    ) -> Optional[ContactMapping]: ...

    def get_mapping_by_resource(
        self, account_id: str, resource_name: str
    ) -> Optional[ContactMapping]: ...

    def save_mapping(self, mapping: ContactMapping) -> ContactMapping: ...


class SyncLogStore(Protocol):
    def start_sync_log(
        self, account_id: str, trigger_type: TriggerType, dry_run: bool = False
    ) -> int: ...

    def update_sync_log(self, log_id: int, result: Any) -> None: ...

    def finish_sync_log(
        self, log_id: int, result: Any, status: SyncLogStatus
    ) -> None: ...

    def get_recent_sync_logs(
        self, account_id: str, limit: int = 10
    ) -> list[SyncLogEntry]: ...


class DonorRepository(Protocol):
    def load_active_records(self, account_id: str) -> dict[str, DonorRecord]: ...

    def get_donor(self, donor_id: str) -> Optional[Donor]: ...

    def save_record(self, record: DonorRecord) -> DonorRecord: ...


class ContactClient(Protocol):
    def get_or_create_contact_group(self, name: str) -> str: ...

    def find_contact_group(self, name: str) -> Optional[str]: ...

    def list_group_members(self, group_resource_name: str) -> list[ExternalPerson]: ...

    def create_contact(self, body: dict[str, Any]) -> ExternalPerson: ...

    def update_contact(
        self, body: dict[str, Any], resource_name: str, etag: Optional[str] = None
    ) -> ExternalPerson: ...
