"""Storage contract shared by every tier.

``ReminderStore`` is the operation set callers program against.
``BaseBackend`` implements every operation once (validation, id and
timestamp assignment, lazy overdue promotion, statistics, export/import,
health check) on top of a handful of abstract storage primitives that
each tier provides.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, ClassVar, Protocol

import msgspec

from ...core.models import (
    MetadataEntry,
    Reminder,
    Status,
    UserPreferences,
    ValidationIssue,
    as_utc,
    generate_id,
    utcnow,
)
from ...core.validators import (
    normalize_reminder,
    validate_metadata_key,
    validate_owner,
    validate_reminder_id,
)
from ...exceptions import NotFoundError, StorageUnavailableError, ValidationError
from ..exchange import ExportEnvelope, build_export_envelope, parse_import_envelope
from ..query import ReminderFilter, ReminderStatistics, apply_filters, calculate_statistics

logger = logging.getLogger(__name__)

HEALTH_CHECK_OWNER = "__health_check__"

# Fields callers may change through update(); the rest are storage-owned
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "due",
        "category",
        "priority",
        "status",
        "notify",
        "alert_offsets",
        "completed_at",
        "snoozed_at",
        "snooze_count",
    }
)
PROTECTED_FIELDS = frozenset({"id", "owner", "created_at", "updated_at"})


class BackendInfo(msgspec.Struct, kw_only=True, rename="camel"):
    """Descriptive diagnostics about a storage tier instance."""

    tier_name: str
    name: str
    persistent: bool = True
    size_bytes: int | None = None
    quota_bytes: int | None = None
    record_count: int | None = None
    features: dict[str, Any] = msgspec.field(default_factory=dict)
    warning: str | None = None


class HealthReport(msgspec.Struct, frozen=True, kw_only=True, rename="camel"):
    """Outcome of a save/read/delete round trip."""

    healthy: bool
    tier_name: str
    detail: str
    timestamp: datetime = msgspec.field(default_factory=utcnow)


class ReminderStore(Protocol):
    """Operations every storage tier exposes to callers."""

    tier_name: str

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def save(self, reminder: Reminder) -> Reminder: ...

    async def list(
        self, owner: str, filters: ReminderFilter | Mapping[str, Any] | None = None
    ) -> list[Reminder]: ...

    async def get_by_id(self, reminder_id: str) -> Reminder | None: ...

    async def update(self, reminder_id: str, changes: Mapping[str, Any]) -> Reminder: ...

    async def delete(self, reminder_id: str) -> bool: ...

    async def delete_by_status(self, owner: str, status: Status | str) -> int: ...

    async def save_preferences(
        self, owner: str, settings: Mapping[str, Any]
    ) -> UserPreferences: ...

    async def get_preferences(self, owner: str) -> UserPreferences | None: ...

    async def save_metadata(self, key: str, value: Any) -> MetadataEntry: ...

    async def get_metadata(self, key: str) -> Any: ...

    async def statistics(self, owner: str) -> ReminderStatistics: ...

    async def export_all(self, owner: str) -> ExportEnvelope: ...

    async def import_all(
        self, envelope: ExportEnvelope | Mapping[str, Any] | bytes | str, owner: str
    ) -> int: ...

    async def clear(self, owner: str) -> int: ...

    async def info(self) -> BackendInfo: ...

    async def health_check(self) -> HealthReport: ...


class BaseBackend(ABC):
    """Contract implementation over abstract storage primitives.

    Subclasses implement the underscore-prefixed primitives. Primitives
    receive already-validated, canonical records and must apply each call
    as one unit: either every change is visible afterwards or none is.
    """

    tier_name: ClassVar[str] = "base"

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or utcnow

    def now(self) -> datetime:
        """Current time from the injected clock, in UTC."""
        return as_utc(self._clock())

    # Storage primitives

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the store; raise StorageUnavailableError if impossible."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        pass

    @abstractmethod
    async def info(self) -> BackendInfo:
        """Describe this tier instance."""
        pass

    @abstractmethod
    async def _fetch(self, reminder_id: str) -> Reminder | None:
        """Read one reminder by id."""
        pass

    @abstractmethod
    async def _scan(self, owner: str, criteria: ReminderFilter) -> list[Reminder]:
        """Return candidate reminders of ``owner``.

        Tiers with indexes may narrow the candidates using ``criteria``; the
        full filter is applied afterwards regardless.
        """
        pass

    @abstractmethod
    async def _store(
        self, reminders: list[Reminder], preferences: UserPreferences | None = None
    ) -> None:
        """Insert or replace reminders (and optionally preferences) as one unit."""
        pass

    @abstractmethod
    async def _remove(self, reminder_ids: list[str]) -> int:
        """Delete reminders by id, returning how many existed."""
        pass

    @abstractmethod
    async def _delete_by_status(self, owner: str, status: Status) -> int:
        """Delete all of an owner's reminders in ``status`` as one unit."""
        pass

    @abstractmethod
    async def _purge_owner(self, owner: str) -> int:
        """Delete an owner's reminders and preferences as one unit."""
        pass

    @abstractmethod
    async def _fetch_preferences(self, owner: str) -> UserPreferences | None:
        pass

    @abstractmethod
    async def _store_metadata(self, entry: MetadataEntry) -> None:
        pass

    @abstractmethod
    async def _fetch_metadata(self, key: str) -> MetadataEntry | None:
        pass

    @abstractmethod
    async def _fetch_all_metadata(self) -> dict[str, MetadataEntry]:
        pass

    # Contract operations

    async def save(self, reminder: Reminder) -> Reminder:
        """Validate and store a reminder.

        Assigns ``id`` and ``created_at`` on first save and always refreshes
        ``updated_at``.

        Raises:
            ValidationError: if the record shape is invalid.
        """
        record = normalize_reminder(reminder)
        if record.id is not None:
            validate_reminder_id(record.id)

        now = self.now()
        if record.id is None:
            record = msgspec.structs.replace(
                record, id=generate_id(), created_at=record.created_at or now
            )
        elif record.created_at is None:
            existing = await self._fetch(record.id)
            created = existing.created_at if existing and existing.created_at else now
            record = msgspec.structs.replace(record, created_at=created)

        record = msgspec.structs.replace(record, updated_at=now)
        await self._store([record])
        return record

    async def list(
        self, owner: str, filters: ReminderFilter | Mapping[str, Any] | None = None
    ) -> list[Reminder]:
        """List an owner's reminders matching ``filters``."""
        validate_owner(owner)
        criteria = ReminderFilter.from_value(filters)

        # Unpromoted past-due reminders are still stored as active
        scan_criteria = criteria
        if criteria.status == Status.OVERDUE:
            scan_criteria = msgspec.structs.replace(criteria, status=None)

        candidates = await self._scan(owner, scan_criteria)
        candidates = await self._promote_overdue(candidates)
        return apply_filters(candidates, criteria)

    async def get_by_id(self, reminder_id: str) -> Reminder | None:
        """Fetch one reminder, or None if it does not exist."""
        validate_reminder_id(reminder_id)
        reminder = await self._fetch(reminder_id)
        if reminder is None:
            return None
        promoted = await self._promote_overdue([reminder])
        return promoted[0] if promoted else None

    async def update(self, reminder_id: str, changes: Mapping[str, Any]) -> Reminder:
        """Merge ``changes`` into an existing reminder.

        Fields not named in ``changes`` keep their stored value.

        Raises:
            NotFoundError: if no reminder has ``reminder_id``.
            ValidationError: on unknown or protected fields, or if the merged
                record is invalid.
        """
        validate_reminder_id(reminder_id)
        if not isinstance(changes, Mapping):
            raise ValidationError([ValidationIssue("changes", "Changes must be a mapping")])

        issues = [
            ValidationIssue(name, "Field cannot be changed")
            for name in changes
            if name in PROTECTED_FIELDS
        ]
        issues.extend(
            ValidationIssue(name, "Unknown field")
            for name in changes
            if name not in PROTECTED_FIELDS and name not in UPDATABLE_FIELDS
        )
        if issues:
            raise ValidationError(issues)

        existing = await self._fetch(reminder_id)
        if existing is None:
            raise NotFoundError(reminder_id)

        record = normalize_reminder(msgspec.structs.replace(existing, **changes))
        record = self._apply_status_transition(existing, record, changes)
        record = msgspec.structs.replace(record, updated_at=self.now())
        await self._store([record])
        return record

    async def delete(self, reminder_id: str) -> bool:
        """Delete one reminder; False if it did not exist."""
        validate_reminder_id(reminder_id)
        return await self._remove([reminder_id]) > 0

    async def delete_by_status(self, owner: str, status: Status | str) -> int:
        """Delete all of an owner's reminders in ``status``."""
        validate_owner(owner)
        status = _coerce_status(status)
        if status == Status.OVERDUE:
            await self._promote_overdue(await self._scan(owner, ReminderFilter()))
        return await self._delete_by_status(owner, status)

    async def save_preferences(
        self, owner: str, settings: Mapping[str, Any]
    ) -> UserPreferences:
        """Overwrite an owner's preferences."""
        validate_owner(owner)
        if not isinstance(settings, Mapping):
            raise ValidationError(
                [ValidationIssue("settings", "Preferences must be a mapping")]
            )
        _check_serializable("settings", dict(settings))

        preferences = UserPreferences(
            owner=owner, settings=dict(settings), updated_at=self.now()
        )
        await self._store([], preferences)
        return preferences

    async def get_preferences(self, owner: str) -> UserPreferences | None:
        validate_owner(owner)
        return await self._fetch_preferences(owner)

    async def save_metadata(self, key: str, value: Any) -> MetadataEntry:
        """Overwrite a process-wide metadata value."""
        validate_metadata_key(key)
        _check_serializable("value", value)

        entry = MetadataEntry(key=key, value=value, timestamp=self.now())
        await self._store_metadata(entry)
        return entry

    async def get_metadata(self, key: str) -> Any:
        validate_metadata_key(key)
        entry = await self._fetch_metadata(key)
        return entry.value if entry is not None else None

    async def statistics(self, owner: str) -> ReminderStatistics:
        """Aggregate counts over an owner's reminders."""
        reminders = await self.list(owner)
        stats = calculate_statistics(reminders, self.now())
        stats.tier_name = self.tier_name
        return stats

    async def export_all(self, owner: str) -> ExportEnvelope:
        """Snapshot an owner's reminders, preferences and the metadata."""
        reminders = await self.list(owner)
        preferences = await self._fetch_preferences(owner)
        metadata = {
            key: entry.value for key, entry in (await self._fetch_all_metadata()).items()
        }
        return build_export_envelope(
            self.tier_name, reminders, preferences, metadata, now=self.now()
        )

    async def import_all(
        self, envelope: ExportEnvelope | Mapping[str, Any] | bytes | str, owner: str
    ) -> int:
        """Import an export envelope into ``owner``'s data.

        Every record is validated before anything is written and receives
        a new id, so imports never collide with existing records.
        """
        validate_owner(owner)
        batch = parse_import_envelope(envelope, owner)

        now = self.now()
        records = [
            msgspec.structs.replace(
                record,
                id=generate_id(),
                created_at=record.created_at or now,
                updated_at=now,
            )
            for record in batch.records
        ]
        preferences = None
        if batch.preferences is not None:
            preferences = UserPreferences(
                owner=owner, settings=batch.preferences, updated_at=now
            )

        await self._store(records, preferences)
        logger.info(
            "Imported %d reminders for %s into %s tier", len(records), owner, self.tier_name
        )
        return len(records)

    async def clear(self, owner: str) -> int:
        """Remove all of an owner's reminders and preferences."""
        validate_owner(owner)
        return await self._purge_owner(owner)

    async def health_check(self) -> HealthReport:
        """Save, read back and delete a throwaway reminder.

        Never raises; failures are reported as an unhealthy report.
        """
        try:
            probe = Reminder(
                owner=HEALTH_CHECK_OWNER,
                title="Health Check Test",
                due=self.now() + timedelta(hours=1),
                alert_offsets=(),
            )
            saved = await self.save(probe)
            fetched = await self.get_by_id(saved.id)
            if fetched is None or fetched.title != probe.title:
                raise StorageUnavailableError("Health check record could not be read back")
            if not await self.delete(saved.id):
                raise StorageUnavailableError("Health check record could not be deleted")
        except Exception as e:
            logger.warning("Health check failed for %s tier: %s", self.tier_name, e)
            return HealthReport(
                healthy=False, tier_name=self.tier_name, detail=str(e), timestamp=self.now()
            )

        return HealthReport(
            healthy=True,
            tier_name=self.tier_name,
            detail="save/read/delete round trip succeeded",
            timestamp=self.now(),
        )

    # Shared helpers

    async def _promote_overdue(self, reminders: list[Reminder]) -> list[Reminder]:
        """Mark past-due active reminders overdue and persist the change.

        Candidates are replaced by their current stored state, so a write
        that landed after the scan is neither reverted nor hidden. Candidates
        deleted in the meantime are dropped.
        """
        now = self.now()
        candidates = {r.id for r in reminders if r.needs_overdue_promotion(now)}
        if not candidates:
            return reminders

        current = await self._mark_overdue(sorted(candidates), now)
        return [
            current[r.id] if r.id in candidates else r
            for r in reminders
            if r.id not in candidates or r.id in current
        ]

    async def _mark_overdue(
        self, reminder_ids: list[str], now: datetime
    ) -> dict[str, Reminder]:
        """Flip still-eligible reminders to overdue from their stored state.

        Returns the current record for every id that still exists. Tiers
        whose reads and writes can interleave with other callers override
        this to re-check and write as one unit.
        """
        current: dict[str, Reminder] = {}
        promoted: list[Reminder] = []
        for reminder_id in reminder_ids:
            reminder = await self._fetch(reminder_id)
            if reminder is None:
                continue
            if reminder.needs_overdue_promotion(now):
                reminder = msgspec.structs.replace(
                    reminder, status=Status.OVERDUE, updated_at=now
                )
                promoted.append(reminder)
            current[reminder_id] = reminder

        if promoted:
            await self._store(promoted)
            logger.debug("Promoted %d reminders to overdue", len(promoted))
        return current

    def _apply_status_transition(
        self, before: Reminder, after: Reminder, changes: Mapping[str, Any]
    ) -> Reminder:
        """Stamp completion and snooze bookkeeping when the status changes."""
        if after.status == before.status:
            return after

        now = self.now()
        updates: dict[str, Any] = {}
        if after.status == Status.COMPLETED and after.completed_at is None:
            updates["completed_at"] = now
        elif before.status == Status.COMPLETED and "completed_at" not in changes:
            updates["completed_at"] = None

        if after.status == Status.SNOOZED:
            if "snoozed_at" not in changes:
                updates["snoozed_at"] = now
            if "snooze_count" not in changes:
                updates["snooze_count"] = before.snooze_count + 1

        return msgspec.structs.replace(after, **updates) if updates else after


def _coerce_status(status: Status | str) -> Status:
    try:
        return Status(status)
    except ValueError as e:
        raise ValidationError([ValidationIssue("status", "Invalid status")]) from e


def _check_serializable(field: str, value: Any) -> None:
    try:
        msgspec.json.encode(value)
    except (TypeError, msgspec.EncodeError) as e:
        raise ValidationError([ValidationIssue(field, f"Value is not serializable: {e}")]) from e
