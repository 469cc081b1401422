"""Tests for runtime tier selection."""

import asyncio
import logging
import sqlite3

import pytest

from remindervault.config import StorageSettings
from remindervault.exceptions import StorageTimeoutError, StorageUnavailableError
from remindervault.storage.backends import FlatFileBackend, MemoryBackend, SQLiteBackend
from remindervault.storage.monitoring import MonitoredBackend
from remindervault.storage.probe import StorageEnvironment
from remindervault.storage.selector import BackendSelector, environment_from_settings


def blocked_connect(*args, **kwargs):
    raise sqlite3.OperationalError("database is blocked")


@pytest.fixture
def settings(temp_dir):
    return StorageSettings(data_dir=str(temp_dir / "data"), estimate_quota=False)


@pytest.fixture
async def selector(settings, clock):
    selector = BackendSelector(settings, clock=clock)
    yield selector
    await selector.close()


class TestSelection:
    """Test walking the tiers in priority order."""

    async def test_durable_preferred(self, selector):
        backend = await selector.get("alice")

        assert isinstance(backend, MonitoredBackend)
        assert isinstance(backend.backend, SQLiteBackend)
        assert (await backend.info()).tier_name == "durable"

    async def test_restricted_durable_falls_back_to_flat(self, settings, clock):
        env = StorageEnvironment(data_dir=settings.data_path, connect=blocked_connect)
        selector = BackendSelector(settings, environment=env, clock=clock)

        backend = await selector.get("alice")

        assert (await backend.info()).tier_name == "flat"
        capabilities = await selector.capabilities()
        assert capabilities["durable"].reason.value == "restricted-mode"
        await selector.close()

    async def test_no_location_falls_back_to_ephemeral(self, clock, caplog):
        selector = BackendSelector(StorageSettings(data_dir=None), clock=clock)

        with caplog.at_level(logging.WARNING):
            backend = await selector.get("alice")

        assert backend.tier_name == "ephemeral"
        assert "Falling back to in-memory storage" in caplog.text
        await selector.close()

    async def test_disabled_tiers_are_skipped(self, temp_dir, clock):
        settings = StorageSettings(
            data_dir=str(temp_dir), disabled_tiers=["durable"], estimate_quota=False
        )
        selector = BackendSelector(settings, clock=clock)

        backend = await selector.get("alice")

        assert backend.tier_name == "flat"
        await selector.close()

    async def test_initialize_failure_moves_to_next_tier(self, selector, monkeypatch):
        async def refuse(self):
            raise StorageUnavailableError("cannot open")

        monkeypatch.setattr(SQLiteBackend, "initialize", refuse)

        backend = await selector.get("alice")

        assert backend.tier_name == "flat"

    async def test_selection_is_cached_per_owner(self, selector):
        first = await selector.get("alice")
        again = await selector.get("alice")
        other = await selector.get("bob")

        assert first is again
        assert other is first
        assert selector.selected_tiers == {"alice": "durable", "bob": "durable"}

    async def test_owner_is_validated(self, selector):
        with pytest.raises(ValueError):
            await selector.get("")


class TestConcurrency:
    """Test that concurrent callers share one probe and one initialization."""

    async def test_probe_runs_once(self, selector, monkeypatch):
        calls = 0
        original = selector.probe.run

        async def counting_run():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return await original()

        monkeypatch.setattr(selector.probe, "run", counting_run)

        backends = await asyncio.gather(*(selector.get(f"user{i}") for i in range(5)))

        assert calls == 1
        assert len({id(b) for b in backends}) == 1

    async def test_backend_initialized_once(self, selector, monkeypatch):
        opened = 0
        original = SQLiteBackend.initialize

        async def counting_initialize(self):
            nonlocal opened
            opened += 1
            await original(self)

        monkeypatch.setattr(SQLiteBackend, "initialize", counting_initialize)

        await asyncio.gather(selector.get("alice"), selector.get("alice"), selector.get("bob"))

        assert opened == 1

    async def test_failed_probe_is_retried(self, selector, monkeypatch):
        original = selector.probe.run
        attempts = 0

        async def flaky_run():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("probe crashed")
            return await original()

        monkeypatch.setattr(selector.probe, "run", flaky_run)

        with pytest.raises(RuntimeError):
            await selector.get("alice")
        backend = await selector.get("alice")

        assert backend.tier_name == "durable"


class TestLifecycle:
    """Test invalidation, direct creation and shutdown."""

    async def test_no_fallback_after_selection(self, selector, monkeypatch):
        backend = await selector.get("alice")

        async def broken(*args, **kwargs):
            raise StorageUnavailableError("disk vanished")

        monkeypatch.setattr(backend.backend, "_scan", broken)

        with pytest.raises(StorageUnavailableError, match="disk vanished"):
            await backend.list("alice")
        assert (await selector.get("alice")) is backend

    async def test_invalidate_reprobes(self, selector, monkeypatch):
        await selector.get("alice")
        calls = 0
        original = selector.probe.run

        async def counting_run():
            nonlocal calls
            calls += 1
            return await original()

        monkeypatch.setattr(selector.probe, "run", counting_run)

        selector.invalidate()
        await selector.get("alice")

        assert calls == 1

    async def test_invalidate_can_change_tier(self, selector):
        assert (await selector.get("alice")).tier_name == "durable"

        selector.settings.disabled_tiers.append("durable")
        selector.invalidate()

        assert (await selector.get("alice")).tier_name == "flat"

    @pytest.mark.parametrize(
        "tier, cls",
        [("durable", SQLiteBackend), ("flat", FlatFileBackend), ("ephemeral", MemoryBackend)],
    )
    async def test_create_specific(self, selector, tier, cls):
        backend = await selector.create_specific(tier)
        try:
            assert isinstance(backend, cls)
            assert backend.tier_name == tier
        finally:
            await backend.close()

    async def test_create_specific_unknown_tier(self, selector):
        with pytest.raises(ValueError, match="Unknown storage tier"):
            await selector.create_specific("cloud")

    async def test_create_specific_without_location(self, clock):
        selector = BackendSelector(StorageSettings(data_dir=None), clock=clock)

        with pytest.raises(StorageUnavailableError):
            await selector.create_specific("durable")

    async def test_health_check(self, selector):
        report = await selector.health_check(await selector.get("alice"))

        assert report.healthy is True
        assert report.tier_name == "durable"

    async def test_capability_report(self, selector):
        report = await selector.capability_report()

        assert report.capabilities["durable"].available is True
        assert report.capabilities["flat"].available is True

    async def test_close_releases_backends(self, selector):
        backend = await selector.get("alice")

        await selector.close()

        assert backend.backend.initialized is False
        assert selector.selected_tiers == {}

    async def test_close_waits_for_opening_backend(self, selector, monkeypatch):
        original = SQLiteBackend.initialize
        opening = asyncio.Event()

        async def slow_initialize(self):
            opening.set()
            await asyncio.sleep(0.1)
            await original(self)

        monkeypatch.setattr(SQLiteBackend, "initialize", slow_initialize)

        pending = asyncio.ensure_future(selector.get("alice"))
        await opening.wait()
        await selector.close()
        backend = await pending

        assert backend.backend.initialized is False

    async def test_operation_timeout_applies_to_selected_backend(
        self, temp_dir, clock, monkeypatch
    ):
        settings = StorageSettings(
            data_dir=str(temp_dir), estimate_quota=False, operation_timeout=0.05
        )
        selector = BackendSelector(settings, clock=clock)
        backend = await selector.get("alice")

        async def slow_scan(owner, criteria):
            await asyncio.sleep(0.3)
            return []

        monkeypatch.setattr(backend.backend, "_scan", slow_scan)

        with pytest.raises(StorageTimeoutError):
            await backend.list("alice")
        await selector.close()


def test_environment_from_settings(temp_dir):
    settings = StorageSettings(
        data_dir=str(temp_dir), database_name="custom.db", flat_quota_bytes=1024
    )

    env = environment_from_settings(settings)

    assert env.database_path == temp_dir / "custom.db"
    assert env.flat_store().quota_bytes == 1024
