"""Shared fixtures for core module tests."""

from datetime import datetime, timezone
from typing import Any

import pytest

from remindervault.core.models import Category, Reminder, Status


@pytest.fixture
def due() -> datetime:
    return datetime(2026, 3, 11, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def valid_reminder(due) -> Reminder:
    """A reminder that passes every field check."""
    return Reminder(
        owner="alice",
        title="Team Meeting",
        description="Weekly sync with the platform team",
        due=due,
        category=Category.WORK,
        priority=3,
        alert_offsets=(5, 15),
    )


@pytest.fixture
def wire_reminder() -> dict[str, Any]:
    """A reminder as it appears in stored documents and exports."""
    return {
        "owner": "alice",
        "title": "Dentist",
        "due": "2026-03-12T14:00:00Z",
        "description": "",
        "category": "health",
        "priority": 2,
        "status": Status.ACTIVE.value,
        "notify": True,
        "alertOffsets": [30],
        "id": "a1b2c3",
        "createdAt": "2026-03-01T08:00:00Z",
        "updatedAt": "2026-03-01T08:00:00Z",
        "completedAt": None,
        "snoozedAt": None,
        "snoozeCount": 0,
    }
