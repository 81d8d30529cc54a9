"""
Sync engine for bidirectional donor <-> Google Contacts synchronization.

Orchestrates one sync run for one account: loads both sides, classifies each
donor/contact pair by comparing fresh content hashes with the hashes stored
at the last sync, and pushes, pulls or resolves conflicts accordingly.
"""

import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from donor_sync.sync.conflict import ConflictPolicy, ConflictResolver, ConflictSide
from donor_sync.sync.hashing import external_hash, platform_hash
from donor_sync.sync.mapper import apply_person, donor_to_person, record_from_person
from donor_sync.sync.models import (
    ContactMapping,
    DonorRecord,
    SyncLogStatus,
    SyncStatus,
    TriggerType,
)
from donor_sync.sync.person import ExternalPerson
from donor_sync.sync.ports import (
    ContactClient,
    DonorRepository,
    MappingStore,
    SyncLogStore,
)

# Minimum seconds between two mutating Google calls; configuration can only raise it
MIN_THROTTLE_INTERVAL = 1.1

DEFAULT_CONTACT_GROUP_NAME = "Donation Platform"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncItemError(Exception):
    """Raised for a single donor/contact pair that cannot be synced."""

    pass


@dataclass
class SyncConflict:
    """One differing field of a donor changed on both sides."""

    donor_id: str
    donor_name: str
    resource_name: str
    field: str
    platform_value: str
    external_value: str
    resolution: str

    def to_dict(self) -> dict[str, str]:
        return {
            "donorId": self.donor_id,
            "donorName": self.donor_name,
            "externalResourceName": self.resource_name,
            "field": self.field,
            "platformValue": self.platform_value,
            "externalValue": self.external_value,
            "resolution": self.resolution,
        }


@dataclass
class SyncResult:
    """
    Outcome of one sync run.

    Counters are also filled during a dry run, where they describe what
    would have happened.
    """

    success: bool = False
    donors_pushed: int = 0
    contacts_pulled: int = 0
    conflicts: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    conflict_details: list[SyncConflict] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False

    def add_error(self, message: str) -> None:
        self.errors += 1
        self.error_details.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "donorsPushed": self.donors_pushed,
            "contactsPulled": self.contacts_pulled,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "errorDetails": list(self.error_details),
            "conflictDetails": [c.to_dict() for c in self.conflict_details],
            "duration": self.duration_ms,
            "dryRun": self.dry_run,
        }

    def summary(self) -> str:
        """Generate a human-readable summary of the run."""
        status = "completed" if self.success else "failed"
        prefix = "Dry run " if self.dry_run else "Sync "
        lines = [
            f"{prefix}{status} in {self.duration_ms} ms",
            f"  Donors pushed:   {self.donors_pushed}",
            f"  Contacts pulled: {self.contacts_pulled}",
            f"  Conflicts:       {self.conflicts}",
            f"  Errors:          {self.errors}",
        ]
        for detail in self.error_details:
            lines.append(f"    - {detail}")
        return "\n".join(lines)


class Throttle:
    """
    Spaces out mutating Google calls.

    wait() blocks until at least `interval` seconds have passed since the
    previous mutating call finished.

    Usage:
        throttle = Throttle(1.5)
        created = throttle.call(lambda: api.create_contact(body))
    """

    def __init__(
        self,
        interval: float = MIN_THROTTLE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = max(float(interval), MIN_THROTTLE_INTERVAL)
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        if self._last_call is None:
            return
        remaining = self.interval - (self._clock() - self._last_call)
        if remaining > 0:
            self._sleep(remaining)

    def mark(self) -> None:
        self._last_call = self._clock()

    def call(self, operation: Callable[[], T]) -> T:
        """Run a mutating operation, waiting for the interval first."""
        self.wait()
        try:
            return operation()
        finally:
            self.mark()


@dataclass
class _Run:
    """Working state of one sync run."""

    account_id: str
    client: ContactClient
    group: Optional[str]
    policy: ConflictPolicy
    dry_run: bool
    result: SyncResult
    throttle: Throttle
    records: dict[str, DonorRecord]
    people: dict[str, ExternalPerson]
    mappings: list[ContactMapping]
    mappings_by_donor: dict[str, ContactMapping] = field(default_factory=dict)
    mappings_by_resource: dict[str, ContactMapping] = field(default_factory=dict)
    # Group members not (yet) linked to a mapping
    unmatched: dict[str, ExternalPerson] = field(default_factory=dict)
    # Donor id -> resource names of unlinked members carrying that back-reference
    references: dict[str, list[str]] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """
    Bidirectional sync engine between platform donors and Google Contacts.

    A run goes through these passes:
    1. Setup: open the sync log, build the Google client, resolve the managed
       group, load mappings, active donors and group members. Any failure
       here fails the run.
    2. Existing mappings: compare fresh hashes with the stored ones and
       push, pull or resolve a conflict. Mappings whose donor is gone or
       inactive are marked as errors; contacts deleted at Google are
       re-created (or re-linked when an unlinked member points back to
       the donor).
    3. New donors: create a Google contact for every unmapped active donor.
    4. New contacts: link members whose back-reference names an unmapped
       donor, pull everything else in as a new donor.
    Failures of a single pair are recorded and the run continues.

    Usage:
        engine = SyncEngine(
            mapping_store=SyncDatabase('/path/to/sync.db'),
            sync_log=sync_db,
            repository=PlatformDatabase('/path/to/platform.db'),
            client_factory=lambda account: PeopleAPI(auth.require_credentials(account)),
        )

        result = engine.run_sync('acme', ConflictPolicy.NEWEST_WINS)
        print(result.summary())
    """

    def __init__(
        self,
        mapping_store: MappingStore,
        sync_log: SyncLogStore,
        repository: DonorRepository,
        client_factory: Callable[[str], ContactClient],
        contact_group_name: str = DEFAULT_CONTACT_GROUP_NAME,
        throttle_interval: float = MIN_THROTTLE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the sync engine.

        Args:
            mapping_store: Persistence for donor/contact mappings
            sync_log: Persistence for sync run logs
            repository: Platform donor read model and write port
            client_factory: Returns an authenticated Google client for an account
            contact_group_name: Name of the managed contact group
            throttle_interval: Seconds between mutating Google calls, never
                below MIN_THROTTLE_INTERVAL
            sleep: Sleep function used by the throttle
            clock: Monotonic clock used by the throttle and for durations
        """
        self.mapping_store = mapping_store
        self.sync_log = sync_log
        self.repository = repository
        self.client_factory = client_factory
        self.contact_group_name = contact_group_name
        self.throttle_interval = max(float(throttle_interval), MIN_THROTTLE_INTERVAL)
        self.resolver = ConflictResolver()
        self._sleep = sleep
        self._clock = clock

    def run_sync(
        self,
        account_id: str,
        policy: ConflictPolicy | str = ConflictPolicy.PLATFORM_WINS,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        dry_run: bool = False,
    ) -> SyncResult:
        """
        Run one sync for an account.

        Args:
            account_id: Platform account to sync
            policy: Conflict policy for pairs changed on both sides
            trigger_type: What started the run (recorded in the sync log)
            dry_run: Classify and count only; nothing is written on either
                side and no mapping changes

        Returns:
            SyncResult; success is False only when setup failed
        """
        policy = ConflictPolicy.parse(policy)
        trigger_type = TriggerType(trigger_type)
        started = self._clock()
        result = SyncResult(dry_run=dry_run)

        log_id = self.sync_log.start_sync_log(account_id, trigger_type, dry_run=dry_run)
        logger.info(
            f"Starting {trigger_type.value} sync for {account_id} "
            f"(policy={policy.value}, dry_run={dry_run})"
        )

        try:
            run = self._prepare(account_id, policy, dry_run, result)
        except Exception as e:
            logger.error(f"Sync setup failed for {account_id}: {e}")
            result.add_error(f"Sync failed: {e}")
            return self._finish(log_id, result, started, SyncLogStatus.FAILED)

        try:
            for sync_pass in (
                self._sync_existing_mappings,
                self._push_new_donors,
                self._pull_new_contacts,
            ):
                sync_pass(run)
                self._flush_progress(log_id, result)
        except Exception as e:
            logger.exception(f"Sync aborted for {account_id}: {e}")
            result.add_error(f"Sync failed: {e}")
            return self._finish(log_id, result, started, SyncLogStatus.FAILED)

        result.success = True
        return self._finish(log_id, result, started, SyncLogStatus.COMPLETED)

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    def _prepare(
        self,
        account_id: str,
        policy: ConflictPolicy,
        dry_run: bool,
        result: SyncResult,
    ) -> _Run:
        """Build the client and load both sides."""
        throttle = Throttle(self.throttle_interval, sleep=self._sleep, clock=self._clock)
        client = self.client_factory(account_id)

        group = client.find_contact_group(self.contact_group_name)
        if group is None and not dry_run:
            group = throttle.call(
                lambda: client.get_or_create_contact_group(self.contact_group_name)
            )
            logger.info(f"Created contact group '{self.contact_group_name}': {group}")

        records = self.repository.load_active_records(account_id)
        mappings = self.mapping_store.get_mappings(account_id)
        people = client.list_group_members(group) if group else []

        run = _Run(
            account_id=account_id,
            client=client,
            group=group,
            policy=policy,
            dry_run=dry_run,
            result=result,
            throttle=throttle,
            records=records,
            people={p.resource_name: p for p in people},
            mappings=mappings,
        )
        run.mappings_by_donor = {m.donor_id: m for m in mappings}
        run.mappings_by_resource = {m.resource_name: m for m in mappings if m.resource_name}
        run.unmatched = {
            rn: p for rn, p in run.people.items() if rn not in run.mappings_by_resource
        }
        references: dict[str, list[str]] = defaultdict(list)
        for rn, person in run.unmatched.items():
            if person.donor_ref:
                references[person.donor_ref].append(rn)
        run.references = dict(references)

        logger.info(
            f"Loaded {len(records)} active donors, {len(mappings)} mappings and "
            f"{len(people)} Google contacts for {account_id}"
        )
        return run

    def _flush_progress(self, log_id: int, result: SyncResult) -> None:
        try:
            self.sync_log.update_sync_log(log_id, result)
        except Exception as e:
            logger.warning(f"Could not update sync log {log_id}: {e}")

    def _finish(
        self,
        log_id: int,
        result: SyncResult,
        started: float,
        status: SyncLogStatus,
    ) -> SyncResult:
        result.duration_ms = int((self._clock() - started) * 1000)
        self.sync_log.finish_sync_log(log_id, result, status)
        logger.info(
            f"Sync {status.value}: pushed={result.donors_pushed} "
            f"pulled={result.contacts_pulled} conflicts={result.conflicts} "
            f"errors={result.errors} ({result.duration_ms} ms)"
        )
        return result

    def _item_failed(
        self,
        run: _Run,
        label: str,
        error: Exception,
        mapping: Optional[ContactMapping] = None,
    ) -> None:
        """Record a per-pair failure and flag the mapping, if it is persisted."""
        message = f"{label}: {error}"
        logger.warning(message)
        run.result.add_error(message)

        if mapping is None or mapping.id is None or run.dry_run:
            return
        mapping.sync_status = SyncStatus.ERROR
        try:
            self.mapping_store.save_mapping(mapping)
        except Exception as save_error:
            logger.error(f"Could not flag mapping {mapping.id} as failed: {save_error}")

    # =========================================================================
    # Pass: existing mappings
    # =========================================================================

    def _sync_existing_mappings(self, run: _Run) -> None:
        for mapping in list(run.mappings):
            record = run.records.get(mapping.donor_id)
            label = f"Donor {mapping.donor_id}"
            try:
                if record is None:
                    self._mark_donor_missing(run, mapping)
                    continue

                label = f"Donor {record.donor.display_name} ({record.id})"
                person = run.people.get(mapping.resource_name) if mapping.resource_name else None
                if person is None:
                    self._repair_missing_contact(run, record, mapping)
                    continue

                run.unmatched.pop(person.resource_name, None)
                self._reconcile(run, record, mapping, person)
            except Exception as e:
                self._item_failed(run, label, e, mapping)

    def _mark_donor_missing(self, run: _Run, mapping: ContactMapping) -> None:
        """Report a mapping whose donor is gone or inactive, once."""
        if mapping.sync_status == SyncStatus.ERROR:
            logger.debug(f"Donor {mapping.donor_id} still missing or inactive")
            return
        raise SyncItemError("donor is missing or inactive")

    def _claim_reference(self, run: _Run, donor_id: str) -> Optional[ExternalPerson]:
        """Take an unlinked member whose back-reference names this donor."""
        for resource_name in run.references.get(donor_id, []):
            person = run.unmatched.pop(resource_name, None)
            if person is not None:
                return person
        return None

    def _repair_missing_contact(
        self, run: _Run, record: DonorRecord, mapping: ContactMapping
    ) -> None:
        """The linked Google contact is gone from the group: re-link or re-create it."""
        candidate = self._claim_reference(run, record.id)
        if candidate is not None:
            logger.info(
                f"Re-linking donor {record.id} from {mapping.resource_name} "
                f"to {candidate.resource_name}"
            )
            self._push_update(run, record, mapping, candidate)
        else:
            logger.info(
                f"Google contact {mapping.resource_name or '(none)'} missing for "
                f"donor {record.id}, re-creating"
            )
            self._push_create(run, record, mapping)

    def _reconcile(
        self,
        run: _Run,
        record: DonorRecord,
        mapping: ContactMapping,
        person: ExternalPerson,
    ) -> None:
        """Classify a linked pair by hash and act on it."""
        platform_changed = platform_hash(record) != mapping.platform_hash
        external_changed = external_hash(person) != mapping.external_hash
        if not external_changed and person.donor_ref != record.id:
            # Back-reference missing at Google, e.g. after a failed stamp
            platform_changed = True

        if not platform_changed and not external_changed:
            logger.debug(f"Donor {record.id} unchanged")
            if mapping.sync_status in (SyncStatus.ERROR, SyncStatus.PENDING) and not run.dry_run:
                mapping.sync_status = SyncStatus.SYNCED
                self.mapping_store.save_mapping(mapping)
            return

        if platform_changed and not external_changed:
            logger.debug(f"Donor {record.id} changed on platform, pushing")
            self._push_update(run, record, mapping, person)
        elif external_changed and not platform_changed:
            logger.debug(f"Donor {record.id} changed at Google, pulling")
            self._pull(run, record, mapping, person)
        else:
            self._resolve_conflict(run, record, mapping, person)

    def _resolve_conflict(
        self,
        run: _Run,
        record: DonorRecord,
        mapping: ContactMapping,
        person: ExternalPerson,
    ) -> None:
        resolution = self.resolver.resolve(record, person, run.policy)
        if not resolution.differences:
            logger.debug(f"Donor {record.id} changed identically on both sides")
            if not run.dry_run:
                self._record_synced(run, mapping, record, person)
            return

        run.result.conflicts += 1
        run.result.conflict_details.extend(
            SyncConflict(
                donor_id=record.id,
                donor_name=record.donor.display_name,
                resource_name=person.resource_name,
                field=difference.field,
                platform_value=difference.platform_value,
                external_value=difference.external_value,
                resolution=resolution.resolution,
            )
            for difference in resolution.differences
        )
        logger.info(f"Conflict for donor {record.id}: {resolution.reason}")

        if resolution.winner is None:
            if not run.dry_run:
                mapping.sync_status = SyncStatus.CONFLICT
                self.mapping_store.save_mapping(mapping)
        elif resolution.winner == ConflictSide.PLATFORM:
            self._push_update(run, record, mapping, person)
        else:
            self._pull(run, record, mapping, person)

    # =========================================================================
    # Pass: new donors
    # =========================================================================

    def _push_new_donors(self, run: _Run) -> None:
        for donor_id, record in list(run.records.items()):
            if donor_id in run.mappings_by_donor:
                continue
            if any(rn in run.unmatched for rn in run.references.get(donor_id, [])):
                # An unlinked Google contact already points at this donor
                continue

            mapping = ContactMapping(account_id=run.account_id, donor_id=donor_id)
            try:
                self._push_create(run, record, mapping)
            except Exception as e:
                self._item_failed(
                    run, f"Donor {record.donor.display_name} ({donor_id})", e
                )

    # =========================================================================
    # Pass: new Google contacts
    # =========================================================================

    def _pull_new_contacts(self, run: _Run) -> None:
        for resource_name, person in list(run.unmatched.items()):
            if resource_name in run.mappings_by_resource:
                continue
            try:
                self._link_or_pull(run, person)
            except Exception as e:
                self._item_failed(run, f"Contact {person.display_name} ({resource_name})", e)

    def _link_or_pull(self, run: _Run, person: ExternalPerson) -> None:
        donor_ref = person.donor_ref
        if donor_ref:
            record = run.records.get(donor_ref)
            if record is not None:
                existing = run.mappings_by_donor.get(donor_ref)
                if existing is None:
                    logger.info(
                        f"Linking {person.resource_name} to donor {donor_ref} "
                        "by back-reference"
                    )
                    mapping = ContactMapping(account_id=run.account_id, donor_id=donor_ref)
                    self._push_update(run, record, mapping, person)
                    return
                if existing.resource_name != person.resource_name:
                    raise SyncItemError(
                        f"references donor {donor_ref}, which is already linked "
                        f"to {existing.resource_name or 'another contact'}"
                    )
                return

            donor = self.repository.get_donor(donor_ref)
            if donor is not None and donor.account_id == run.account_id and not donor.is_active:
                logger.info(
                    f"Skipping {person.resource_name}: donor {donor_ref} is inactive"
                )
                return

        self._pull_create(run, person)

    def _pull_create(self, run: _Run, person: ExternalPerson) -> None:
        if not (person.given_name.strip() or person.family_name.strip()):
            logger.debug(f"Skipping {person.resource_name}: contact has no name")
            return

        record = record_from_person(run.account_id, person)
        if run.dry_run:
            run.result.contacts_pulled += 1
            return

        saved = self.repository.save_record(record)
        run.records[saved.id] = saved
        mapping = ContactMapping(account_id=run.account_id, donor_id=saved.id)
        self._record_synced(run, mapping, saved, person)
        run.result.contacts_pulled += 1
        logger.info(f"Created donor {saved.id} from {person.resource_name}")

        try:
            self._stamp_back_reference(run, saved, mapping, person)
        except Exception as e:
            self._item_failed(
                run, f"Contact {person.display_name} ({person.resource_name})", e, mapping
            )

    def _stamp_back_reference(
        self,
        run: _Run,
        record: DonorRecord,
        mapping: ContactMapping,
        person: ExternalPerson,
    ) -> None:
        """Write the new donor's id onto the Google contact it came from."""
        body = donor_to_person(record, base=person)
        updated = run.throttle.call(
            lambda: run.client.update_contact(body, person.resource_name, person.etag)
        )
        self._record_synced(run, mapping, record, updated)

    # =========================================================================
    # Writes
    # =========================================================================

    def _push_update(
        self,
        run: _Run,
        record: DonorRecord,
        mapping: ContactMapping,
        person: ExternalPerson,
    ) -> None:
        body = donor_to_person(record, base=person)
        if run.dry_run:
            run.result.donors_pushed += 1
            return

        updated = run.throttle.call(
            lambda: run.client.update_contact(body, person.resource_name, person.etag)
        )
        self._record_synced(run, mapping, record, updated)
        run.result.donors_pushed += 1

    def _push_create(self, run: _Run, record: DonorRecord, mapping: ContactMapping) -> None:
        body = donor_to_person(record, group_resource_name=run.group)
        if run.dry_run:
            run.result.donors_pushed += 1
            return

        created = run.throttle.call(lambda: run.client.create_contact(body))
        self._record_synced(run, mapping, record, created)
        run.result.donors_pushed += 1
        logger.debug(f"Created {created.resource_name} for donor {record.id}")

    def _pull(
        self,
        run: _Run,
        record: DonorRecord,
        mapping: ContactMapping,
        person: ExternalPerson,
    ) -> None:
        updated = apply_person(record, person)
        if run.dry_run:
            run.result.contacts_pulled += 1
            return

        saved = self.repository.save_record(updated)
        run.records[saved.id] = saved
        self._record_synced(run, mapping, saved, person)
        run.result.contacts_pulled += 1

    def _record_synced(
        self,
        run: _Run,
        mapping: ContactMapping,
        record: DonorRecord,
        person: ExternalPerson,
    ) -> None:
        """Store both sides' hashes as of now and index the mapping."""
        previous_resource = mapping.resource_name
        mapping.resource_name = person.resource_name
        mapping.etag = person.etag
        mapping.platform_hash = platform_hash(record)
        mapping.external_hash = external_hash(person)
        mapping.sync_status = SyncStatus.SYNCED
        mapping.last_synced_at = _utcnow()
        self.mapping_store.save_mapping(mapping)

        if previous_resource and previous_resource != mapping.resource_name:
            run.mappings_by_resource.pop(previous_resource, None)
        run.mappings_by_resource[mapping.resource_name] = mapping
        run.mappings_by_donor[mapping.donor_id] = mapping
