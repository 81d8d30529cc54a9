"""
Google contact representation used by the sync engine.

ExternalPerson is parsed from a People API person resource. It keeps the raw
response so updates can preserve data the platform does not model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# userDefined key carrying the platform donor id on a Google contact
BACK_REFERENCE_KEY = "platformDonorId"

# relations type holding the donor's wife
SPOUSE_RELATION_TYPE = "spouse"

# externalIds type holding the donor's identity number
ID_NUMBER_TYPE = "custom"


@dataclass(frozen=True)
class LabeledValue:
    """An email address or phone number with its Google type label."""

    value: str
    label: Optional[str] = None


@dataclass(frozen=True)
class PostalAddress:
    """The address fields that map to a donor place."""

    street: str = ""
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = ""

    def is_empty(self) -> bool:
        return not any(
            [self.street, self.city, self.region, self.postal_code, self.country]
        )


@dataclass
class ExternalPerson:
    """
    A contact stored in the connected Google account.

    Attributes:
        resource_name: Google's unique ID (e.g., "people/c12345")
        etag: Required for updates, prevents concurrent modification conflicts
        given_name: First name
        family_name: Last name
        nickname: First nickname, if any
        title: Honorific prefix of the first name
        spouse_name: Person of the first spouse relation
        notes: First biography
        id_number: Value of the first custom external id
        emails: Email addresses in Google's order
        phones: Phone numbers in Google's order
        addresses: Postal addresses in Google's order
        donor_ref: Back-reference to a platform donor id, if present
        last_modified: Update time of the contact source
        raw: The untouched API response

    Usage:
        person = ExternalPerson.from_api_response(api_response)
        if person.donor_ref:
            ...
    """

    resource_name: str
    etag: str = ""
    given_name: str = ""
    family_name: str = ""
    nickname: str = ""
    title: str = ""
    spouse_name: str = ""
    notes: str = ""
    id_number: str = ""
    emails: list[LabeledValue] = field(default_factory=list)
    phones: list[LabeledValue] = field(default_factory=list)
    addresses: list[PostalAddress] = field(default_factory=list)
    donor_ref: Optional[str] = None
    last_modified: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def display_name(self) -> str:
        parts = [p for p in [self.given_name, self.family_name] if p]
        return " ".join(parts) or self.resource_name

    @property
    def primary_address(self) -> Optional[PostalAddress]:
        return self.addresses[0] if self.addresses else None

    @classmethod
    def from_api_response(cls, person: dict[str, Any]) -> "ExternalPerson":
        """
        Create an ExternalPerson from a Google People API response.

        Example API response structure::

            {
                'resourceName': 'people/c12345',
                'etag': 'abc123',
                'names': [{'givenName': 'Ada', 'familyName': 'Lovelace'}],
                'nicknames': [{'value': 'Countess'}],
                'relations': [{'person': 'William King', 'type': 'spouse'}],
                'biographies': [{'value': 'Met at the gala'}],
                'externalIds': [{'value': 'A-123', 'type': 'custom'}],
                'emailAddresses': [{'value': 'ada@example.com', 'type': 'home'}],
                'phoneNumbers': [{'value': '+44 20 7946 0000', 'type': 'main'}],
                'addresses': [{'streetAddress': '12 St James Sq', ...}],
                'userDefined': [{'key': 'platformDonorId', 'value': 'd-1'}],
                'metadata': {'sources': [{'updateTime': '...'}]}
            }
        """
        names = person.get("names") or [{}]
        primary_name = names[0]

        nicknames = [
            n.get("value", "") for n in person.get("nicknames", []) if n.get("value")
        ]

        emails = [
            LabeledValue(value=e["value"].strip(), label=e.get("type"))
            for e in person.get("emailAddresses", [])
            if (e.get("value") or "").strip()
        ]

        phones = [
            LabeledValue(value=p["value"].strip(), label=p.get("type"))
            for p in person.get("phoneNumbers", [])
            if (p.get("value") or "").strip()
        ]

        addresses = [
            PostalAddress(
                street=a.get("streetAddress", "") or "",
                city=a.get("city", "") or "",
                region=a.get("region", "") or "",
                postal_code=a.get("postalCode", "") or "",
                country=a.get("country", "") or "",
            )
            for a in person.get("addresses", [])
        ]
        addresses = [a for a in addresses if not a.is_empty()]

        spouse_name = next(
            (
                r.get("person", "")
                for r in person.get("relations", [])
                if (r.get("type") or "").lower() == SPOUSE_RELATION_TYPE and r.get("person")
            ),
            "",
        )

        biographies = [
            b.get("value", "") for b in person.get("biographies", []) if b.get("value")
        ]

        id_number = next(
            (
                e.get("value", "")
                for e in person.get("externalIds", [])
                if e.get("type") == ID_NUMBER_TYPE and e.get("value")
            ),
            "",
        )

        donor_ref = None
        for entry in person.get("userDefined", []):
            if entry.get("key") == BACK_REFERENCE_KEY and entry.get("value"):
                donor_ref = entry["value"]
                break

        last_modified = None
        sources = person.get("metadata", {}).get("sources", [])
        if sources:
            update_time = sources[0].get("updateTime")
            if update_time:
                try:
                    last_modified = datetime.fromisoformat(
                        update_time.replace("Z", "+00:00")
                    )
                except (ValueError, TypeError):
                    pass

        return cls(
            resource_name=person.get("resourceName", ""),
            etag=person.get("etag", ""),
            given_name=primary_name.get("givenName", "") or "",
            family_name=primary_name.get("familyName", "") or "",
            nickname=nicknames[0] if nicknames else "",
            title=primary_name.get("honorificPrefix", "") or "",
            spouse_name=spouse_name,
            notes=biographies[0] if biographies else "",
            id_number=id_number,
            emails=emails,
            phones=phones,
            addresses=addresses,
            donor_ref=donor_ref,
            last_modified=last_modified,
            raw=dict(person),
        )
