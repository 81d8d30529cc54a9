"""
Conflict resolution for donors changed on both sides since the last sync.

Provides the policies a caller can pick when triggering a sync and the
field-level differences recorded for every conflict.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from donor_sync.sync.mapper import ContactFields, fields_from_person, project
from donor_sync.sync.models import DonorRecord
from donor_sync.sync.person import ExternalPerson


class ConflictPolicy(str, Enum):
    """Available conflict resolution policies."""

    PLATFORM_WINS = "platform_wins"
    EXTERNAL_WINS = "external_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: "str | ConflictPolicy") -> "ConflictPolicy":
        """
        Parse a policy name, accepting "google_wins" for EXTERNAL_WINS.

        Raises:
            ValueError: If the name is not a known policy
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "google_wins":
            return cls.EXTERNAL_WINS
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(
                f"Invalid conflict resolution '{value}'. Must be one of: {valid}"
            ) from None


class ConflictSide(Enum):
    """Indicates which side won a conflict resolution."""

    PLATFORM = "platform"
    EXTERNAL = "external"


@dataclass
class FieldDifference:
    """One mapped field whose value differs between the two sides."""

    field: str
    platform_value: str
    external_value: str


@dataclass
class ConflictResolution:
    """
    Result of resolving one conflict.

    Attributes:
        winner: Side whose data is written to the other, or None when the
            conflict is left for a human (manual policy)
        reason: Human-readable explanation of the outcome
        differences: Mapped fields whose values differ
        merged_fields: Winning value for every differing field; empty when
            there is no winner
    """

    winner: Optional[ConflictSide]
    reason: str
    differences: list[FieldDifference] = field(default_factory=list)
    merged_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def resolution(self) -> str:
        return self.winner.value if self.winner else "manual"


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def diff_fields(platform: ContactFields, external: ContactFields) -> list[FieldDifference]:
    """List the mapped fields whose canonical values differ."""
    left = platform.canonical()
    right = external.canonical()
    return [
        FieldDifference(
            field=name,
            platform_value=_render(left[name]),
            external_value=_render(right[name]),
        )
        for name in left
        if left[name] != right[name]
    ]


class ConflictResolver:
    """
    Resolves conflicts between a donor and its Google contact.

    Usage:
        resolver = ConflictResolver(ConflictPolicy.NEWEST_WINS)
        resolution = resolver.resolve(record, person)
        if resolution.winner == ConflictSide.PLATFORM:
            # push the donor to Google
            pass

    Attributes:
        policy: The default policy applied by resolve()
    """

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.PLATFORM_WINS):
        self.policy = policy

    def resolve(
        self,
        record: DonorRecord,
        person: ExternalPerson,
        policy: Optional[ConflictPolicy] = None,
    ) -> ConflictResolution:
        """
        Resolve a conflict between a donor and its Google contact.

        Args:
            record: Current platform state
            person: Current Google state
            policy: Overrides the resolver's policy for this call

        Returns:
            ConflictResolution with the winner and the differing fields
        """
        policy = policy or self.policy
        platform_fields = project(record)
        external_fields = fields_from_person(person)
        differences = diff_fields(platform_fields, external_fields)

        if policy == ConflictPolicy.PLATFORM_WINS:
            winner, reason = ConflictSide.PLATFORM, "Platform always wins"
        elif policy == ConflictPolicy.EXTERNAL_WINS:
            winner, reason = ConflictSide.EXTERNAL, "Google always wins"
        elif policy == ConflictPolicy.NEWEST_WINS:
            winner, reason = self._resolve_newest_wins(record, person)
        else:
            return ConflictResolution(
                winner=None,
                reason="Left for manual review",
                differences=differences,
            )

        winning = platform_fields if winner == ConflictSide.PLATFORM else external_fields
        canonical = winning.canonical()
        merged = {d.field: canonical[d.field] for d in differences}
        return ConflictResolution(
            winner=winner, reason=reason, differences=differences, merged_fields=merged
        )

    def _resolve_newest_wins(
        self, record: DonorRecord, person: ExternalPerson
    ) -> tuple[ConflictSide, str]:
        """
        The side modified most recently wins; ties go to the platform.

        Missing timestamps count as the epoch. Naive datetimes are UTC.
        """
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        platform_time = record.donor.updated_at or epoch
        external_time = person.last_modified or epoch

        if platform_time.tzinfo is None:
            platform_time = platform_time.replace(tzinfo=timezone.utc)
        if external_time.tzinfo is None:
            external_time = external_time.replace(tzinfo=timezone.utc)

        if external_time > platform_time:
            return (
                ConflictSide.EXTERNAL,
                f"Google has newer modification time ({external_time} > {platform_time})",
            )
        if platform_time > external_time:
            return (
                ConflictSide.PLATFORM,
                f"Platform has newer modification time ({platform_time} > {external_time})",
            )
        return (
            ConflictSide.PLATFORM,
            f"Equal timestamps ({platform_time}), defaulting to platform",
        )

    def __repr__(self) -> str:
        return f"ConflictResolver(policy={self.policy.value})"
