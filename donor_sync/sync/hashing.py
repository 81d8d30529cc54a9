"""
Content hashes for change detection.

Both sides are reduced to the same ContactFields projection before hashing,
so a donor and the Google contact written from it produce the same digest.
Collections are sorted first: reordering emails or phones is not a change.
"""

import hashlib
import json

from donor_sync.sync.mapper import ContactFields, fields_from_person, project
from donor_sync.sync.models import DonorRecord
from donor_sync.sync.person import ExternalPerson


def fields_hash(fields: ContactFields) -> str:
    """SHA-256 hex digest of the canonical form of the fields."""
    payload = json.dumps(fields.canonical(), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def platform_hash(record: DonorRecord) -> str:
    return fields_hash(project(record))


def external_hash(person: ExternalPerson) -> str:
    return fields_hash(fields_from_person(person))
