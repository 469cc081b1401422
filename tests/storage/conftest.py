"""Shared fixtures for storage tests."""

from datetime import timedelta

import pytest

from remindervault.core.models import Category, Reminder, Status
from remindervault.storage.backends import (
    FileKeyValueStore,
    FlatFileBackend,
    MemoryBackend,
    SQLiteBackend,
)


@pytest.fixture
def make_reminder(clock):
    """Factory for valid reminders due a day after the frozen clock."""

    def factory(**overrides) -> Reminder:
        fields = {
            "owner": "alice",
            "title": "Team Meeting",
            "due": clock.now + timedelta(days=1),
            "category": Category.WORK,
            "priority": 2,
        }
        fields.update(overrides)
        return Reminder(**fields)

    return factory


@pytest.fixture
def sample_reminders(make_reminder, clock):
    """A mixed set of reminders for one owner."""
    return [
        make_reminder(title="Team Meeting", priority=3, category=Category.WORK),
        make_reminder(
            title="Pay rent",
            priority=4,
            category=Category.FINANCE,
            due=clock.now + timedelta(days=3),
        ),
        make_reminder(
            title="Dentist",
            description="Bring insurance card",
            priority=2,
            category=Category.HEALTH,
            due=clock.now + timedelta(hours=5),
        ),
        make_reminder(
            title="Read chapter 4",
            priority=1,
            category=Category.EDUCATION,
            status=Status.COMPLETED,
            alert_offsets=(),
        ),
        make_reminder(
            title="Call grandma",
            priority=2,
            category=Category.SOCIAL,
            status=Status.SNOOZED,
            alert_offsets=(10, 30, 60),
        ),
    ]


@pytest.fixture
async def memory_backend(clock):
    backend = MemoryBackend(clock=clock)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
async def sqlite_backend(temp_dir, clock):
    backend = SQLiteBackend(temp_dir / "reminders.sqlite3", clock=clock)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
async def flat_backend(temp_dir, clock):
    backend = FlatFileBackend(FileKeyValueStore(temp_dir / "flat"), clock=clock)
    await backend.initialize()
    yield backend
    await backend.close()
