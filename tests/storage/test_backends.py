"""Tests for the storage contract across every tier.

Each tier must pass the same contract tests; tier-specific behaviour lives
in the per-tier test modules.
"""

from datetime import timedelta

import msgspec
import pytest

from remindervault.core.models import Category, Status
from remindervault.exceptions import NotFoundError, StorageError, ValidationError
from remindervault.storage.backends import (
    FileKeyValueStore,
    FlatFileBackend,
    MemoryBackend,
    SQLiteBackend,
)
from remindervault.storage.backends.base import HEALTH_CHECK_OWNER


class BackendContract:
    """Contract tests that all backends must pass."""

    async def test_save_assigns_identity(self, backend, make_reminder, clock):
        """save() assigns id and timestamps."""
        saved = await backend.save(make_reminder())

        assert saved.id
        assert saved.created_at == clock.now
        assert saved.updated_at == clock.now

    async def test_save_and_get_round_trip(self, backend, make_reminder, clock):
        """A saved reminder reads back unchanged."""
        saved = await backend.save(
            make_reminder(
                owner="u1", title="Team Meeting", due=clock.now + timedelta(hours=2), priority=3
            )
        )

        fetched = await backend.get_by_id(saved.id)

        assert fetched == saved
        assert fetched.title == "Team Meeting"
        assert fetched.priority == 3
        assert fetched.status is Status.ACTIVE

    async def test_get_missing_returns_none(self, backend):
        assert await backend.get_by_id("does-not-exist") is None

    async def test_ids_are_unique(self, backend, make_reminder):
        first = await backend.save(make_reminder())
        second = await backend.save(make_reminder())
        assert first.id != second.id

    async def test_save_normalizes_fields(self, backend, make_reminder):
        saved = await backend.save(
            make_reminder(title="  Padded  ", category="health", alert_offsets=[30])
        )

        fetched = await backend.get_by_id(saved.id)

        assert fetched.title == "Padded"
        assert fetched.category is Category.HEALTH
        assert fetched.alert_offsets == (30,)

    async def test_resave_keeps_created_at(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder())
        clock.advance(timedelta(minutes=10))

        resaved = await backend.save(
            msgspec.structs.replace(saved, title="Moved", created_at=None)
        )

        assert resaved.id == saved.id
        assert resaved.created_at == saved.created_at
        assert resaved.updated_at == clock.now
        assert (await backend.get_by_id(saved.id)).title == "Moved"

    async def test_save_with_unknown_id_creates(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder(id="chosen-id"))

        assert saved.id == "chosen-id"
        assert saved.created_at == clock.now
        assert await backend.get_by_id("chosen-id") == saved

    async def test_invalid_reminder_not_stored(self, backend, make_reminder):
        with pytest.raises(ValidationError) as exc_info:
            await backend.save(make_reminder(title="", priority=9))

        assert set(exc_info.value.fields) == {"title", "priority"}
        assert await backend.list("alice") == []

    async def test_list_is_scoped_to_owner(self, backend, make_reminder):
        await backend.save(make_reminder(owner="alice"))
        await backend.save(make_reminder(owner="bob"))
        await backend.save(make_reminder(owner="bob"))

        assert len(await backend.list("alice")) == 1
        assert len(await backend.list("bob")) == 2
        assert await backend.list("carol") == []

    async def test_list_filters_and_sorts(self, backend, sample_reminders):
        for reminder in sample_reminders:
            await backend.save(reminder)

        active = await backend.list("alice", {"status": "active"})
        by_priority = await backend.list("alice", {"sort_by": "priority", "dir": "desc"})
        health = await backend.list("alice", {"category": Category.HEALTH})

        assert {r.title for r in active} == {"Team Meeting", "Pay rent", "Dentist"}
        assert [r.priority for r in by_priority] == [4, 3, 2, 2, 1]
        assert [r.title for r in health] == ["Dentist"]

    async def test_list_search_and_paginate(self, backend, sample_reminders):
        for reminder in sample_reminders:
            await backend.save(reminder)

        found = await backend.list("alice", {"search": "insurance"})
        page = await backend.list("alice", {"sort_by": "title", "limit": 2, "offset": 1})

        assert [r.title for r in found] == ["Dentist"]
        assert [r.title for r in page] == ["Dentist", "Pay rent"]

    async def test_list_date_range(self, backend, sample_reminders, clock):
        for reminder in sample_reminders:
            await backend.save(reminder)

        soon = await backend.list(
            "alice", {"date_from": clock.now, "date_to": clock.now + timedelta(hours=6)}
        )

        assert [r.title for r in soon] == ["Dentist"]

    async def test_list_rejects_bad_filters(self, backend):
        with pytest.raises(ValidationError):
            await backend.list("alice", {"sort_by": "colour"})
        with pytest.raises(ValidationError):
            await backend.list("", None)

    async def test_update_merges_changes(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder(description="Agenda"))
        clock.advance(timedelta(minutes=5))

        updated = await backend.update(saved.id, {"title": "Planning", "priority": 4})

        assert updated.title == "Planning"
        assert updated.priority == 4
        assert updated.description == "Agenda"
        assert updated.created_at == saved.created_at
        assert updated.updated_at == clock.now
        assert await backend.get_by_id(saved.id) == updated

    async def test_update_missing_raises_not_found(self, backend):
        with pytest.raises(NotFoundError) as exc_info:
            await backend.update("missing", {"title": "x"})
        assert exc_info.value.reminder_id == "missing"

    @pytest.mark.parametrize(
        "changes", [{"owner": "bob"}, {"id": "other"}, {"created_at": None}, {"colour": "red"}]
    )
    async def test_update_rejects_fields(self, backend, make_reminder, changes):
        saved = await backend.save(make_reminder())

        with pytest.raises(ValidationError):
            await backend.update(saved.id, changes)

        assert await backend.get_by_id(saved.id) == saved

    async def test_update_validates_merged_record(self, backend, make_reminder):
        saved = await backend.save(make_reminder())

        with pytest.raises(ValidationError):
            await backend.update(saved.id, {"priority": 0})

    async def test_completing_stamps_completed_at(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder())
        clock.advance(timedelta(minutes=1))

        completed = await backend.update(saved.id, {"status": "completed"})
        reopened = await backend.update(saved.id, {"status": Status.ACTIVE})

        assert completed.status is Status.COMPLETED
        assert completed.completed_at == clock.now
        assert reopened.completed_at is None

    async def test_snoozing_counts(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder())

        snoozed = await backend.update(saved.id, {"status": "snoozed"})
        await backend.update(saved.id, {"status": "active"})
        again = await backend.update(saved.id, {"status": "snoozed"})

        assert snoozed.snoozed_at == clock.now
        assert snoozed.snooze_count == 1
        assert again.snooze_count == 2

    async def test_delete(self, backend, make_reminder):
        saved = await backend.save(make_reminder())

        assert await backend.delete(saved.id) is True
        assert await backend.get_by_id(saved.id) is None
        assert await backend.delete(saved.id) is False

    async def test_delete_by_status(self, backend, make_reminder):
        for _ in range(3):
            await backend.save(make_reminder(owner="u1"))
        for _ in range(2):
            await backend.save(make_reminder(owner="u1", status=Status.COMPLETED))
        await backend.save(make_reminder(owner="u2", status=Status.COMPLETED))

        assert await backend.delete_by_status("u1", "completed") == 2
        assert len(await backend.list("u1")) == 3
        assert len(await backend.list("u2")) == 1

    async def test_delete_by_status_none_matching(self, backend, make_reminder):
        await backend.save(make_reminder())
        assert await backend.delete_by_status("alice", Status.CANCELLED) == 0

    async def test_delete_by_invalid_status(self, backend):
        with pytest.raises(ValidationError):
            await backend.delete_by_status("alice", "archived")

    async def test_preferences(self, backend, clock):
        assert await backend.get_preferences("alice") is None

        saved = await backend.save_preferences("alice", {"theme": "dark", "sound": True})
        await backend.save_preferences("alice", {"theme": "light"})

        stored = await backend.get_preferences("alice")
        assert saved.updated_at == clock.now
        assert stored.settings == {"theme": "light"}
        assert await backend.get_preferences("bob") is None

    async def test_preferences_must_serialize(self, backend):
        with pytest.raises(ValidationError):
            await backend.save_preferences("alice", {"callback": object()})

    async def test_metadata(self, backend):
        assert await backend.get_metadata("lastSync") is None

        await backend.save_metadata("lastSync", "2026-03-10")
        await backend.save_metadata("counters", {"imports": 2})

        assert await backend.get_metadata("lastSync") == "2026-03-10"
        assert await backend.get_metadata("counters") == {"imports": 2}

    async def test_statistics(self, backend, sample_reminders):
        for reminder in sample_reminders:
            await backend.save(reminder)

        stats = await backend.statistics("alice")

        assert stats.total == 5
        assert stats.active == 3
        assert stats.completed == 1
        assert stats.snoozed == 1
        assert stats.tier_name == backend.tier_name

    async def test_export_clear_import(self, backend, sample_reminders):
        saved = [await backend.save(r) for r in sample_reminders]
        await backend.save_preferences("alice", {"theme": "dark"})
        await backend.save_metadata("lastSync", "yesterday")

        envelope = await backend.export_all("alice")
        assert envelope.tier_name == backend.tier_name
        assert len(envelope.data.records) == 5
        assert envelope.data.metadata == {"lastSync": "yesterday"}

        assert await backend.clear("alice") == 5
        assert await backend.list("alice") == []
        assert await backend.get_preferences("alice") is None

        assert await backend.import_all(envelope, "alice") == 5

        restored = await backend.list("alice")
        assert {r.title for r in restored} == {r.title for r in saved}
        assert not {r.id for r in restored} & {r.id for r in saved}
        assert (await backend.get_preferences("alice")).settings == {"theme": "dark"}

    async def test_import_into_other_owner(self, backend, sample_reminders):
        for reminder in sample_reminders:
            await backend.save(reminder)
        envelope = await backend.export_all("alice")

        await backend.import_all(envelope, "bob")

        assert len(await backend.list("alice")) == 5
        assert all(r.owner == "bob" for r in await backend.list("bob"))

    async def test_import_is_all_or_nothing(self, backend, sample_reminders):
        for reminder in sample_reminders:
            await backend.save(reminder)
        payload = msgspec.to_builtins(await backend.export_all("alice"))
        payload["data"]["records"][-1]["priority"] = 12

        with pytest.raises(ValidationError, match="index 4"):
            await backend.import_all(payload, "bob")

        assert await backend.list("bob") == []

    async def test_clear_leaves_other_owners(self, backend, make_reminder):
        await backend.save(make_reminder(owner="alice"))
        await backend.save(make_reminder(owner="bob"))

        assert await backend.clear("alice") == 1
        assert len(await backend.list("bob")) == 1

    async def test_overdue_promotion_is_lazy(self, backend, make_reminder, clock):
        saved = await backend.save(make_reminder(due=clock.now + timedelta(hours=1)))
        assert saved.status is Status.ACTIVE

        clock.advance(timedelta(hours=2))

        fetched = await backend.get_by_id(saved.id)
        assert fetched.status is Status.OVERDUE
        assert fetched.updated_at == clock.now

    async def test_overdue_promotion_is_persisted(self, backend, make_reminder, clock):
        await backend.save(make_reminder(due=clock.now + timedelta(hours=1)))
        await backend.save(make_reminder(due=clock.now + timedelta(days=3)))
        clock.advance(timedelta(hours=2))

        overdue = await backend.list("alice", {"status": "overdue"})
        active = await backend.list("alice", {"status": "active"})
        stats = await backend.statistics("alice")

        assert len(overdue) == 1
        assert len(active) == 1
        assert stats.overdue == 1

    async def test_completed_reminders_never_become_overdue(
        self, backend, make_reminder, clock
    ):
        saved = await backend.save(
            make_reminder(due=clock.now + timedelta(hours=1), status=Status.COMPLETED)
        )
        clock.advance(timedelta(days=1))

        assert (await backend.get_by_id(saved.id)).status is Status.COMPLETED

    async def test_delete_by_overdue_status_promotes_first(
        self, backend, make_reminder, clock
    ):
        await backend.save(make_reminder(due=clock.now + timedelta(hours=1)))
        clock.advance(timedelta(hours=2))

        assert await backend.delete_by_status("alice", "overdue") == 1

    async def test_health_check(self, backend):
        report = await backend.health_check()

        assert report.healthy is True
        assert report.tier_name == backend.tier_name
        assert await backend.list(HEALTH_CHECK_OWNER) == []

    async def test_info(self, backend, make_reminder):
        await backend.save(make_reminder())

        info = await backend.info()

        assert info.tier_name == backend.tier_name
        assert info.record_count == 1


class TestMemoryBackendContract(BackendContract):
    """Run the contract against the ephemeral tier."""

    @pytest.fixture
    async def backend(self, memory_backend):
        return memory_backend


class TestSQLiteBackendContract(BackendContract):
    """Run the contract against the durable tier."""

    @pytest.fixture
    async def backend(self, sqlite_backend):
        return sqlite_backend

    async def test_data_survives_reopen(self, temp_dir, make_reminder, clock):
        path = temp_dir / "reopen.sqlite3"
        first = SQLiteBackend(path, clock=clock)
        saved = await first.save(make_reminder())
        await first.close()

        second = SQLiteBackend(path, clock=clock)
        try:
            assert await second.get_by_id(saved.id) == saved
        finally:
            await second.close()


class TestFlatFileBackendContract(BackendContract):
    """Run the contract against the flat tier."""

    @pytest.fixture
    async def backend(self, flat_backend):
        return flat_backend

    async def test_data_survives_reopen(self, temp_dir, make_reminder, clock):
        first = FlatFileBackend(FileKeyValueStore(temp_dir / "reopen"), clock=clock)
        await first.initialize()
        saved = await first.save(make_reminder())

        second = FlatFileBackend(temp_dir / "reopen", clock=clock)
        await second.initialize()

        assert await second.get_by_id(saved.id) == saved


class TestHealthCheckFailure:
    """A failing tier reports unhealthy instead of raising."""

    async def test_failure_is_reported(self, clock):
        class BrokenBackend(MemoryBackend):
            async def _store(self, reminders, preferences=None):
                raise StorageError("disk on fire")

        backend = BrokenBackend(clock=clock)

        report = await backend.health_check()

        assert report.healthy is False
        assert "disk on fire" in report.detail
        assert report.tier_name == "ephemeral"


async def test_save_requires_reminder(memory_backend):
    with pytest.raises(ValidationError):
        await memory_backend.save({"title": "not a Reminder"})

