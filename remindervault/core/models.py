"""Core data models for reminders and storage diagnostics.

This module defines the records persisted by every storage tier and the
small value types the tiers report back to callers. All models are
msgspec structs so they serialize identically whichever tier stores them.
Wire names are camelCase (``alertOffsets``, ``createdAt``) to keep stored
documents and export envelopes stable across tiers.

Key components:
- Reminder: Immutable reminder record owned by a single user
- UserPreferences: Per-owner settings blob
- MetadataEntry: Process-wide bookkeeping value
- TierCapability: Result of probing one storage tier
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import msgspec


class Status(str, Enum):
    """Lifecycle states of a reminder."""

    ACTIVE = "active"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    SNOOZED = "snoozed"


class Category(str, Enum):
    """Reminder categories."""

    PERSONAL = "personal"
    WORK = "work"
    HEALTH = "health"
    FINANCE = "finance"
    EDUCATION = "education"
    SOCIAL = "social"
    OTHER = "other"


class Priority(int, Enum):
    """Priority levels, lowest to highest."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4


class CapabilityReason(str, Enum):
    """Why a storage tier is (un)available."""

    NONE = "none"
    API_MISSING = "api-missing"
    RESTRICTED_MODE = "restricted-mode"
    OPERATIONAL_FAILURE = "operational-failure"


TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
DEFAULT_ALERT_OFFSETS = (5, 15)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate an opaque, globally unique record id."""
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Reminder(msgspec.Struct, frozen=True, kw_only=True, rename="camel"):
    """A single reminder.

    Callers supply everything except ``id`` and the timestamps; the storage
    tier assigns ``id``/``created_at`` on first save and refreshes
    ``updated_at`` on every save. The struct is frozen, so updates go
    through ``msgspec.structs.replace``.
    """

    owner: str
    title: str
    due: datetime
    description: str = ""
    category: Category = Category.PERSONAL
    priority: int = Priority.MEDIUM.value
    status: Status = Status.ACTIVE
    notify: bool = True
    alert_offsets: tuple[int, ...] = DEFAULT_ALERT_OFFSETS
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    snoozed_at: datetime | None = None
    snooze_count: int = 0

    def is_past_due(self, now: datetime | None = None) -> bool:
        """Check whether the due time has passed."""
        return as_utc(self.due) <= (now or utcnow())

    def needs_overdue_promotion(self, now: datetime | None = None) -> bool:
        """Active reminders whose due time passed are lazily marked overdue."""
        return self.status == Status.ACTIVE and self.is_past_due(now)

    def caller_fields(self) -> dict[str, Any]:
        """Fields supplied by the caller, excluding storage-assigned ones."""
        data = msgspec.structs.asdict(self)
        for name in ("id", "created_at", "updated_at"):
            data.pop(name)
        return data

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-compatible builtins using wire names."""
        return msgspec.to_builtins(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reminder":
        """Build a reminder from wire-format builtins."""
        return msgspec.convert(data, cls)


class UserPreferences(msgspec.Struct, frozen=True, kw_only=True, rename="camel"):
    """Per-owner settings, overwritten wholesale on each save."""

    owner: str
    settings: dict[str, Any] = msgspec.field(default_factory=dict)
    updated_at: datetime = msgspec.field(default_factory=utcnow)


class MetadataEntry(msgspec.Struct, frozen=True, kw_only=True):
    """Process-wide bookkeeping value, not scoped to an owner."""

    key: str
    value: Any
    timestamp: datetime = msgspec.field(default_factory=utcnow)


class TierCapability(msgspec.Struct, frozen=True, kw_only=True, rename="camel"):
    """Outcome of actively probing one storage tier."""

    available: bool
    reason: CapabilityReason = CapabilityReason.NONE
    quota_estimate_bytes: int | None = None
    error: str | None = None
    checks: dict[str, Any] = msgspec.field(default_factory=dict)


class ValidationIssue(msgspec.Struct, frozen=True):
    """One failed field check."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"
