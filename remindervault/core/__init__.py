"""Core reminder data models and validation."""

from .models import (
    CapabilityReason,
    Category,
    MetadataEntry,
    Priority,
    Reminder,
    Status,
    TierCapability,
    UserPreferences,
    ValidationIssue,
)
from .validators import ReminderValidator, normalize_reminder

__all__ = [
    "CapabilityReason",
    "Category",
    "MetadataEntry",
    "Priority",
    "Reminder",
    "ReminderValidator",
    "Status",
    "TierCapability",
    "UserPreferences",
    "ValidationIssue",
    "normalize_reminder",
]
