"""Export/import envelope shared by all storage tiers.

The envelope shape is stable across tiers so data exported from one tier
can be imported into another::

    {version, timestamp, tierName,
     data: {records, preferences, metadata},
     statistics}
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import msgspec

from ..core.models import Reminder, UserPreferences, ValidationIssue, utcnow
from ..core.validators import normalize_reminder
from ..exceptions import ValidationError
from .query import ReminderStatistics, calculate_statistics

ENVELOPE_VERSION = "2.0"

# Storage-assigned fields dropped from imported records
_REGENERATED_FIELDS = ("id", "updatedAt", "exportedAt")


class ExportData(msgspec.Struct, kw_only=True, rename="camel"):
    """Payload section of an export envelope."""

    records: list[Reminder] = msgspec.field(default_factory=list)
    preferences: UserPreferences | None = None
    metadata: dict[str, Any] = msgspec.field(default_factory=dict)


class ExportEnvelope(msgspec.Struct, kw_only=True, rename="camel"):
    """Portable snapshot of one owner's data."""

    version: str
    timestamp: datetime
    tier_name: str
    data: ExportData
    statistics: ReminderStatistics | None = None


class ImportBatch(msgspec.Struct, kw_only=True):
    """Validated records and preferences ready to be stored."""

    records: list[Reminder]
    preferences: dict[str, Any] | None = None


def build_export_envelope(
    tier_name: str,
    records: list[Reminder],
    preferences: UserPreferences | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ExportEnvelope:
    """Assemble an export envelope with statistics over ``records``."""
    now = now or utcnow()
    return ExportEnvelope(
        version=ENVELOPE_VERSION,
        timestamp=now,
        tier_name=tier_name,
        data=ExportData(
            records=list(records), preferences=preferences, metadata=metadata or {}
        ),
        statistics=calculate_statistics(records, now),
    )


def encode_envelope(envelope: ExportEnvelope) -> bytes:
    """Serialize an envelope to JSON bytes."""
    return msgspec.json.encode(envelope)


def parse_import_envelope(
    payload: ExportEnvelope | Mapping[str, Any] | bytes | str, owner: str
) -> ImportBatch:
    """Validate an import payload and rebuild its records for ``owner``.

    Every record is validated again, storage-assigned fields are dropped so
    the target tier generates fresh ids, and ownership moves to ``owner``.

    Raises:
        ValidationError: on a malformed envelope or any invalid record; the
            message names the index of the first bad record.
    """
    raw = _to_builtins(payload)

    if not isinstance(raw, Mapping):
        raise ValidationError([ValidationIssue("envelope", "Invalid import data format")])

    version = raw.get("version")
    if version is not None and not str(version).startswith("2."):
        raise ValidationError(
            [ValidationIssue("version", f"Unsupported export version: {version}")]
        )

    data = raw.get("data")
    if not isinstance(data, Mapping) or not isinstance(data.get("records"), list):
        raise ValidationError(
            [ValidationIssue("data.records", "Import data must contain a records list")]
        )

    records = []
    for index, item in enumerate(data["records"]):
        records.append(_rebuild_record(index, item, owner))

    preferences = data.get("preferences")
    settings = None
    if isinstance(preferences, Mapping):
        settings = preferences.get("settings")
        if not isinstance(settings, Mapping):
            settings = {
                k: v for k, v in preferences.items() if k not in ("owner", "updatedAt")
            }
        settings = dict(settings)

    return ImportBatch(records=records, preferences=settings)


def _to_builtins(payload: Any) -> Any:
    if isinstance(payload, ExportEnvelope):
        return msgspec.to_builtins(payload)
    if isinstance(payload, (bytes, str)):
        try:
            return msgspec.json.decode(payload)
        except msgspec.DecodeError as e:
            raise ValidationError([ValidationIssue("envelope", f"Invalid JSON: {e}")]) from e
    return payload


def _rebuild_record(index: int, item: Any, owner: str) -> Reminder:
    prefix = f"Invalid record at index {index}"
    if not isinstance(item, Mapping):
        raise ValidationError([ValidationIssue("record", "Record must be an object")], prefix)

    data = {k: v for k, v in item.items() if k not in _REGENERATED_FIELDS}
    data["owner"] = owner

    try:
        reminder = msgspec.convert(data, Reminder)
    except msgspec.ValidationError as e:
        raise ValidationError([ValidationIssue("record", str(e))], prefix) from e

    try:
        return normalize_reminder(reminder)
    except ValidationError as e:
        raise ValidationError(e.issues, prefix) from e
