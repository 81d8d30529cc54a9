"""
Field mapping between platform donors and Google contacts.

Platform -> Google:
    names[0].givenName / familyName  <- donor first / last name
    names[0].honorificPrefix         <- donor title
    nicknames[0]                     <- donor nickname
    relations[type=spouse]           <- donor wife name
    biographies[0]                   <- donor notes
    externalIds[type=custom]         <- donor id number
    emailAddresses                   <- active email contacts, primary first,
                                        type "home" for the primary, else "other"
    phoneNumbers                     <- active phone contacts, primary first,
                                        type "main" for the primary, else "other"
    addresses                        <- primary place, type "home", in place of
                                        the first non-empty Google address
    userDefined[platformDonorId]     <- donor id (back-reference)
    memberships                      <- managed group (create only)

Google -> platform applies the inverse. Empty values on the Google side never
clear platform data, and Google data the platform does not model survives a
push because updates start from the stored person.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from donor_sync.sync.models import (
    ContactType,
    Donor,
    DonorContact,
    DonorPlace,
    DonorRecord,
)
from donor_sync.sync.person import (
    BACK_REFERENCE_KEY,
    ID_NUMBER_TYPE,
    SPOUSE_RELATION_TYPE,
    ExternalPerson,
    LabeledValue,
    PostalAddress,
)

# Name parts Google derives from the structured fields; never sent back
_DERIVED_NAME_KEYS = ("displayName", "displayNameLastFirst", "unstructuredName")


@dataclass(frozen=True)
class ContactFields:
    """
    The mapped slice of a contact, identical in shape for both sides.

    Hashing and conflict diffing both work on this projection so that a
    donor and the Google contact written from it compare equal.
    """

    given_name: str = ""
    family_name: str = ""
    nickname: str = ""
    title: str = ""
    wife_name: str = ""
    notes: str = ""
    id_number: str = ""
    emails: tuple[str, ...] = ()
    phones: tuple[str, ...] = ()
    address: Optional[PostalAddress] = None
    donor_ref: str = ""

    def canonical(self) -> dict[str, Any]:
        """Order-independent plain representation of the fields."""
        address = self.address
        return {
            "given_name": self.given_name,
            "family_name": self.family_name,
            "nickname": self.nickname,
            "title": self.title,
            "wife_name": self.wife_name,
            "notes": self.notes,
            "id_number": self.id_number,
            "emails": sorted(self.emails),
            "phones": sorted(self.phones),
            "address": (
                [
                    address.street,
                    address.city,
                    address.region,
                    address.postal_code,
                    address.country,
                ]
                if address
                else None
            ),
            "donor_ref": self.donor_ref,
        }


def new_id() -> str:
    return str(uuid.uuid4())


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _place_address(place: Optional[DonorPlace]) -> Optional[PostalAddress]:
    if place is None or not place.is_active or place.is_empty():
        return None
    return PostalAddress(
        street=_clean(place.street),
        city=_clean(place.city),
        region=_clean(place.region),
        postal_code=_clean(place.postal_code),
        country=_clean(place.country),
    )


def project(record: DonorRecord) -> ContactFields:
    """Project a donor record onto the mapped fields."""
    donor = record.donor
    return ContactFields(
        given_name=_clean(donor.first_name),
        family_name=_clean(donor.last_name),
        nickname=_clean(donor.nickname),
        title=_clean(donor.title),
        wife_name=_clean(donor.wife_name),
        notes=_clean(donor.notes),
        id_number=_clean(donor.id_number),
        emails=tuple(_clean(c.value) for c in record.emails if _clean(c.value)),
        phones=tuple(_clean(c.value) for c in record.phones if _clean(c.value)),
        address=_place_address(record.place),
        donor_ref=donor.id,
    )


def fields_from_person(person: ExternalPerson) -> ContactFields:
    """Project a Google contact onto the mapped fields."""
    return ContactFields(
        given_name=_clean(person.given_name),
        family_name=_clean(person.family_name),
        nickname=_clean(person.nickname),
        title=_clean(person.title),
        wife_name=_clean(person.spouse_name),
        notes=_clean(person.notes),
        id_number=_clean(person.id_number),
        emails=tuple(e.value for e in person.emails),
        phones=tuple(p.value for p in person.phones),
        address=person.primary_address,
        donor_ref=person.donor_ref or "",
    )


# =============================================================================
# Platform -> Google
# =============================================================================


def _without_metadata(entry: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in entry.items() if k != "metadata"}


def _copy_entries(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    return [_without_metadata(e) for e in raw.get(key, [])]


def _address_entry(address: PostalAddress) -> dict[str, Any]:
    entry = {
        "streetAddress": address.street,
        "city": address.city,
        "region": address.region,
        "postalCode": address.postal_code,
        "country": address.country,
    }
    entry = {k: v for k, v in entry.items() if v}
    entry["type"] = "home"
    return entry


def _is_blank_address(entry: dict[str, Any]) -> bool:
    return not any(
        entry.get(key)
        for key in ("streetAddress", "city", "region", "postalCode", "country")
    )


def donor_to_person(
    record: DonorRecord,
    group_resource_name: Optional[str] = None,
    base: Optional[ExternalPerson] = None,
) -> dict[str, Any]:
    """
    Build a People API person body from a donor record.

    Args:
        record: Donor record to write
        group_resource_name: Managed group to add as a membership (create only)
        base: Person currently stored at Google; its unmapped data is kept and
            fields the donor has no value for are copied over unchanged

    Returns:
        Person dictionary for createContact / updateContact
    """
    donor = record.donor
    raw = base.raw if base else {}
    body: dict[str, Any] = {}

    names = raw.get("names") or [{}]
    name = _without_metadata(names[0])
    for key in _DERIVED_NAME_KEYS:
        name.pop(key, None)
    for key, value in (
        ("givenName", donor.first_name),
        ("familyName", donor.last_name),
        ("honorificPrefix", donor.title),
    ):
        if _clean(value):
            name[key] = _clean(value)
        else:
            name.pop(key, None)
    body["names"] = [name]

    if _clean(donor.nickname):
        body["nicknames"] = [{"value": _clean(donor.nickname)}]
    elif raw.get("nicknames"):
        body["nicknames"] = _copy_entries(raw, "nicknames")

    relations = _copy_entries(raw, "relations")
    if _clean(donor.wife_name):
        others = [
            r for r in relations if (r.get("type") or "").lower() != SPOUSE_RELATION_TYPE
        ]
        body["relations"] = [
            {"person": _clean(donor.wife_name), "type": SPOUSE_RELATION_TYPE}
        ] + others
    elif relations:
        body["relations"] = relations

    if _clean(donor.notes):
        body["biographies"] = [{"value": _clean(donor.notes), "contentType": "TEXT_PLAIN"}]
    elif raw.get("biographies"):
        body["biographies"] = _copy_entries(raw, "biographies")

    external_ids = _copy_entries(raw, "externalIds")
    if _clean(donor.id_number):
        others = [e for e in external_ids if e.get("type") != ID_NUMBER_TYPE]
        body["externalIds"] = [
            {"value": _clean(donor.id_number), "type": ID_NUMBER_TYPE}
        ] + others
    elif external_ids:
        body["externalIds"] = external_ids

    emails = [c for c in record.emails if _clean(c.value)]
    if emails:
        body["emailAddresses"] = [
            {"value": _clean(c.value), "type": "home" if i == 0 else "other"}
            for i, c in enumerate(emails)
        ]
    elif raw.get("emailAddresses"):
        body["emailAddresses"] = _copy_entries(raw, "emailAddresses")

    phones = [c for c in record.phones if _clean(c.value)]
    if phones:
        body["phoneNumbers"] = [
            {"value": _clean(c.value), "type": "main" if i == 0 else "other"}
            for i, c in enumerate(phones)
        ]
    elif raw.get("phoneNumbers"):
        body["phoneNumbers"] = _copy_entries(raw, "phoneNumbers")

    address = _place_address(record.place)
    existing_addresses = _copy_entries(raw, "addresses")
    if address:
        index = next(
            (i for i, entry in enumerate(existing_addresses) if not _is_blank_address(entry)),
            0,
        )
        existing_addresses[index : index + 1] = [_address_entry(address)]
        body["addresses"] = existing_addresses
    elif existing_addresses:
        body["addresses"] = existing_addresses

    user_defined = [
        e for e in _copy_entries(raw, "userDefined") if e.get("key") != BACK_REFERENCE_KEY
    ]
    user_defined.append({"key": BACK_REFERENCE_KEY, "value": donor.id})
    body["userDefined"] = user_defined

    if group_resource_name:
        body["memberships"] = [
            {"contactGroupMembership": {"contactGroupResourceName": group_resource_name}}
        ]

    return body


# =============================================================================
# Google -> platform
# =============================================================================


def _contact_key(contact_type: ContactType, value: str) -> str:
    value = _clean(value)
    return value.lower() if contact_type == ContactType.EMAIL else value


def _replace_contacts(
    record: DonorRecord, contact_type: ContactType, incoming: list[LabeledValue]
) -> None:
    """Make the active contacts of one type match the incoming list."""
    existing: dict[str, DonorContact] = {}
    for row in record.contacts:
        if row.type != contact_type:
            continue
        key = _contact_key(contact_type, row.value)
        if key in existing:
            row.is_active = False
            row.is_primary = False
        else:
            existing[key] = row

    for index, item in enumerate(incoming):
        row = existing.pop(_contact_key(contact_type, item.value), None)
        if row is None:
            row = DonorContact(
                id=new_id(),
                donor_id=record.donor.id,
                type=contact_type,
                value=item.value,
                label=item.label,
            )
            record.contacts.append(row)
        row.value = item.value
        row.is_active = True
        row.is_primary = index == 0

    for row in existing.values():
        row.is_active = False
        row.is_primary = False


def apply_person(record: DonorRecord, person: ExternalPerson) -> DonorRecord:
    """
    Return a copy of the record updated with the Google contact's values.

    Names, title, nickname, wife name, notes and id number change only when
    Google has a value. A non-empty email or phone list replaces the active
    rows of that type; rows that disappear are deactivated. The first
    non-empty Google address updates or creates the primary place.
    """
    updated = record.copy()
    donor = updated.donor

    if _clean(person.given_name):
        donor.first_name = _clean(person.given_name)
    if _clean(person.family_name):
        donor.last_name = _clean(person.family_name)
    if _clean(person.nickname):
        donor.nickname = _clean(person.nickname)
    if _clean(person.title):
        donor.title = _clean(person.title)
    if _clean(person.spouse_name):
        donor.wife_name = _clean(person.spouse_name)
    if _clean(person.notes):
        donor.notes = _clean(person.notes)
    if _clean(person.id_number):
        donor.id_number = _clean(person.id_number)

    if person.emails:
        _replace_contacts(updated, ContactType.EMAIL, person.emails)
    if person.phones:
        _replace_contacts(updated, ContactType.PHONE, person.phones)

    address = person.primary_address
    if address:
        place = updated.place
        if place is None:
            place = DonorPlace(id=new_id(), donor_id=donor.id)
            updated.place = place
        place.street = address.street
        place.city = address.city
        place.region = address.region
        place.postal_code = address.postal_code
        place.country = address.country
        place.is_primary = True
        place.is_active = True

    return updated


def record_from_person(account_id: str, person: ExternalPerson) -> DonorRecord:
    """Build a new, not yet persisted donor record from a Google contact."""
    donor = Donor(id=new_id(), account_id=account_id, is_active=True)
    return apply_person(DonorRecord(donor=donor), person)
