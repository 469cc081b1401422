"""Validation for reminder records.

Every storage tier routes writes through these checks before touching
its store, so field rules live in exactly one place:

- title: required, 1-100 characters after stripping
- description: at most 500 characters
- due: required datetime (naive values are taken as UTC)
- category / status: members of their enums (string values accepted)
- priority: integer 1-4
- alert_offsets: positive integers
- owner: non-empty string
"""

from datetime import datetime
from typing import Any

import msgspec

from ..exceptions import ValidationError
from .models import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    Category,
    Reminder,
    Status,
    ValidationIssue,
    as_utc,
)

OWNER_MAX_LENGTH = 200


def validate_owner(owner: Any) -> str:
    """Check an owner key, raising ValidationError if unusable."""
    if not isinstance(owner, str) or not owner.strip():
        raise ValidationError([ValidationIssue("owner", "Invalid owner")])
    if len(owner) > OWNER_MAX_LENGTH:
        raise ValidationError(
            [ValidationIssue("owner", f"Owner must be {OWNER_MAX_LENGTH} characters or less")]
        )
    return owner


def validate_reminder_id(reminder_id: Any) -> str:
    """Check a reminder id."""
    if not isinstance(reminder_id, str) or not reminder_id:
        raise ValidationError([ValidationIssue("id", "Invalid reminder ID")])
    return reminder_id


def validate_metadata_key(key: Any) -> str:
    """Check a metadata key."""
    if not isinstance(key, str) or not key:
        raise ValidationError([ValidationIssue("key", "Invalid metadata key")])
    return key


class ReminderValidator:
    """Collects every field problem of a reminder in one pass."""

    def validate(self, reminder: Reminder) -> list[ValidationIssue]:
        """Return the list of issues found (empty when valid)."""
        issues: list[ValidationIssue] = []

        if not isinstance(reminder.owner, str) or not reminder.owner.strip():
            issues.append(ValidationIssue("owner", "Owner is required"))

        title = reminder.title
        if not isinstance(title, str) or not title.strip():
            issues.append(ValidationIssue("title", "Title is required"))
        elif len(title.strip()) > TITLE_MAX_LENGTH:
            issues.append(
                ValidationIssue(
                    "title", f"Title must be {TITLE_MAX_LENGTH} characters or less"
                )
            )

        description = reminder.description
        if description is not None and not isinstance(description, str):
            issues.append(ValidationIssue("description", "Description must be text"))
        elif description and len(description) > DESCRIPTION_MAX_LENGTH:
            issues.append(
                ValidationIssue(
                    "description",
                    f"Description must be {DESCRIPTION_MAX_LENGTH} characters or less",
                )
            )

        if not isinstance(reminder.due, datetime):
            issues.append(ValidationIssue("due", "Valid due date and time is required"))

        priority = reminder.priority
        if (
            isinstance(priority, bool)
            or not isinstance(priority, int)
            or not 1 <= priority <= 4
        ):
            issues.append(ValidationIssue("priority", "Priority must be between 1 and 4"))

        if not _is_member(Category, reminder.category):
            issues.append(ValidationIssue("category", "Invalid category"))

        if not _is_member(Status, reminder.status):
            issues.append(ValidationIssue("status", "Invalid status"))

        if not isinstance(reminder.notify, bool):
            issues.append(ValidationIssue("notify", "Notify must be true or false"))

        offsets = reminder.alert_offsets
        if not isinstance(offsets, (list, tuple)):
            issues.append(ValidationIssue("alert_offsets", "Alert offsets must be a list"))
        elif any(
            isinstance(o, bool) or not isinstance(o, int) or o <= 0 for o in offsets
        ):
            issues.append(
                ValidationIssue(
                    "alert_offsets", "All alert offsets must be positive integers"
                )
            )

        return issues


_validator = ReminderValidator()


def normalize_reminder(reminder: Reminder) -> Reminder:
    """Validate a reminder and return it in canonical form.

    Canonical form has a stripped title, enum-typed category and status,
    a tuple of alert offsets and UTC datetimes.

    Raises:
        ValidationError: if any field check fails.
    """
    if not isinstance(reminder, Reminder):
        raise ValidationError([ValidationIssue("reminder", "Expected a Reminder record")])

    issues = _validator.validate(reminder)
    if issues:
        raise ValidationError(issues)

    return msgspec.structs.replace(
        reminder,
        title=reminder.title.strip(),
        description=(reminder.description or "").strip(),
        category=Category(reminder.category),
        status=Status(reminder.status),
        alert_offsets=tuple(reminder.alert_offsets),
        due=as_utc(reminder.due),
        created_at=_maybe_utc(reminder.created_at),
        updated_at=_maybe_utc(reminder.updated_at),
        completed_at=_maybe_utc(reminder.completed_at),
        snoozed_at=_maybe_utc(reminder.snoozed_at),
    )


def _maybe_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if isinstance(value, datetime) else None


def _is_member(enum_type: type, value: Any) -> bool:
    try:
        enum_type(value)
    except ValueError:
        return False
    return True
