"""
Shared fixtures: in-memory databases, a fake Google contacts client and a
sync engine wired to both.
"""

import copy
from typing import Any, Optional

import pytest

from donor_sync.api.people_api import PeopleAPIError
from donor_sync.storage.db import SyncDatabase
from donor_sync.storage.platform import PlatformDatabase
from donor_sync.sync.engine import SyncEngine
from donor_sync.sync.mapper import new_id
from donor_sync.sync.models import (
    ContactType,
    Donor,
    DonorContact,
    DonorPlace,
    DonorRecord,
)
from donor_sync.sync.person import BACK_REFERENCE_KEY, ExternalPerson

ACCOUNT = "acme"
GROUP_NAME = "Donation Platform"


class FakeContactClient:
    """
    In-memory stand-in for PeopleAPI.

    Stores raw person dictionaries the way Google returns them and records
    every mutating call in `calls`. Set `errors[operation]` to an exception
    to make that operation fail.
    """

    def __init__(self) -> None:
        self.groups: dict[str, str] = {}
        self.members: dict[str, list[str]] = {}
        self.people: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.errors: dict[str, Exception] = {}
        self.update_time = "2024-01-01T00:00:00Z"
        self._next_id = 1

    def _check(self, operation: str) -> None:
        if operation in self.errors:
            raise self.errors[operation]

    def _stamp(self, raw: dict[str, Any], resource_name: str, version: int) -> None:
        raw["resourceName"] = resource_name
        raw["etag"] = f"{resource_name}#{version}"
        raw["metadata"] = {"sources": [{"type": "CONTACT", "updateTime": self.update_time}]}

    # Groups

    def find_contact_group(self, name: str) -> Optional[str]:
        self._check("find_contact_group")
        return self.groups.get(name)

    def get_or_create_contact_group(self, name: str) -> str:
        self._check("get_or_create_contact_group")
        if name not in self.groups:
            self.calls.append(("create_group", name))
            resource_name = f"contactGroups/g{len(self.groups) + 1}"
            self.groups[name] = resource_name
            self.members[resource_name] = []
        return self.groups[name]

    def list_group_members(self, group_resource_name: str) -> list[ExternalPerson]:
        self._check("list_group_members")
        return [
            ExternalPerson.from_api_response(copy.deepcopy(self.people[rn]))
            for rn in self.members.get(group_resource_name, [])
            if rn in self.people
        ]

    # Contacts

    def create_contact(self, body: dict[str, Any]) -> ExternalPerson:
        self._check("create_contact")
        self.calls.append(("create", copy.deepcopy(body)))
        resource_name = f"people/c{self._next_id}"
        self._next_id += 1

        raw = copy.deepcopy(body)
        self._stamp(raw, resource_name, 1)
        self.people[resource_name] = raw
        for membership in body.get("memberships", []):
            group = membership["contactGroupMembership"]["contactGroupResourceName"]
            self.members.setdefault(group, []).append(resource_name)
        return ExternalPerson.from_api_response(copy.deepcopy(raw))

    def update_contact(
        self, body: dict[str, Any], resource_name: str, etag: Optional[str] = None
    ) -> ExternalPerson:
        self._check("update_contact")
        self.calls.append(("update", resource_name, etag, copy.deepcopy(body)))
        current = self.people.get(resource_name)
        if current is None:
            raise PeopleAPIError(f"Contact not found: {resource_name}")
        if etag and etag != current["etag"]:
            raise PeopleAPIError("Contact was modified by another client")

        version = int(current["etag"].rsplit("#", 1)[1]) + 1
        raw = copy.deepcopy(body)
        raw.pop("memberships", None)
        if "memberships" in current:
            raw["memberships"] = current["memberships"]
        self._stamp(raw, resource_name, version)
        self.people[resource_name] = raw
        return ExternalPerson.from_api_response(copy.deepcopy(raw))

    # Helpers simulating edits made directly in Google Contacts

    def add_person(
        self,
        given: str = "",
        family: str = "",
        emails: tuple[str, ...] = (),
        phones: tuple[str, ...] = (),
        donor_ref: Optional[str] = None,
        group_name: str = GROUP_NAME,
    ) -> str:
        if group_name not in self.groups:
            self.groups[group_name] = f"contactGroups/g{len(self.groups) + 1}"
            self.members[self.groups[group_name]] = []
        group = self.groups[group_name]
        resource_name = f"people/c{self._next_id}"
        self._next_id += 1

        raw: dict[str, Any] = {
            "names": [{"givenName": given, "familyName": family}],
            "emailAddresses": [{"value": e, "type": "home"} for e in emails],
            "phoneNumbers": [{"value": p, "type": "mobile"} for p in phones],
            "memberships": [
                {"contactGroupMembership": {"contactGroupResourceName": group}}
            ],
        }
        if donor_ref:
            raw["userDefined"] = [{"key": BACK_REFERENCE_KEY, "value": donor_ref}]
        self._stamp(raw, resource_name, 1)
        self.people[resource_name] = raw
        self.members[group].append(resource_name)
        return resource_name

    def edit_person(self, resource_name: str, **fields: Any) -> None:
        """Replace top-level person fields and bump the etag."""
        raw = self.people[resource_name]
        raw.update(copy.deepcopy(fields))
        version = int(raw["etag"].rsplit("#", 1)[1]) + 1
        self._stamp(raw, resource_name, version)

    def delete_person(self, resource_name: str) -> None:
        del self.people[resource_name]
        for members in self.members.values():
            if resource_name in members:
                members.remove(resource_name)

    def mutations(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] in ("create", "update", "create_group")]


@pytest.fixture
def sync_db():
    db = SyncDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def platform_db():
    db = PlatformDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def fake_client():
    return FakeContactClient()


@pytest.fixture
def sleeps():
    """Durations passed to the engine's throttle."""
    return []


@pytest.fixture
def engine(sync_db, platform_db, fake_client, sleeps):
    return SyncEngine(
        mapping_store=sync_db,
        sync_log=sync_db,
        repository=platform_db,
        client_factory=lambda account_id: fake_client,
        contact_group_name=GROUP_NAME,
        sleep=sleeps.append,
    )


@pytest.fixture
def add_donor(platform_db):
    """Create and persist a donor; returns the stored DonorRecord."""

    def _add(
        first: str = "Ada",
        last: str = "Lovelace",
        emails: tuple[str, ...] = (),
        phones: tuple[str, ...] = (),
        city: str = "",
        nickname: Optional[str] = None,
        account_id: str = ACCOUNT,
    ) -> DonorRecord:
        donor = Donor(
            id=new_id(),
            account_id=account_id,
            first_name=first,
            last_name=last,
            nickname=nickname,
        )
        record = DonorRecord(donor=donor)
        for index, value in enumerate(emails):
            record.contacts.append(
                DonorContact(
                    id=new_id(),
                    donor_id=donor.id,
                    type=ContactType.EMAIL,
                    value=value,
                    is_primary=index == 0,
                )
            )
        for index, value in enumerate(phones):
            record.contacts.append(
                DonorContact(
                    id=new_id(),
                    donor_id=donor.id,
                    type=ContactType.PHONE,
                    value=value,
                    is_primary=index == 0,
                )
            )
        if city:
            record.place = DonorPlace(id=new_id(), donor_id=donor.id, city=city)
        return platform_db.save_record(record)

    return _add
