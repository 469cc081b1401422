"""Runtime selection of the storage tier.

``BackendSelector`` probes the host once, then walks the tiers in priority
order (durable, flat, ephemeral) and hands out the first one that probed
available and initialized cleanly. The choice is cached per owner and is
never revisited: a failure after selection surfaces to the caller.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from ..config import TIER_NAMES, StorageSettings
from ..core.models import TierCapability
from ..core.validators import validate_owner
from ..exceptions import StorageError, StorageUnavailableError
from .backends import BaseBackend, FlatFileBackend, MemoryBackend, SQLiteBackend
from .backends.base import HealthReport, ReminderStore
from .monitoring import MonitoredBackend
from .probe import CapabilityProbe, CapabilityReport, StorageEnvironment

logger = logging.getLogger(__name__)


def environment_from_settings(settings: StorageSettings) -> StorageEnvironment:
    """Describe the host storage locations named by ``settings``."""
    return StorageEnvironment(
        data_dir=settings.data_path,
        flat_quota_bytes=settings.flat_quota_bytes,
        database_name=settings.database_name,
        flat_store_dir=settings.flat_store_dir,
    )


class BackendSelector:
    """Probes once and hands out one monitored backend per owner.

    Construct one selector per process and pass it to whoever needs
    storage; concurrent ``get`` calls share a single probe and a single
    initialization per tier.
    """

    def __init__(
        self,
        settings: StorageSettings | None = None,
        environment: StorageEnvironment | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or StorageSettings()
        self.environment = environment or environment_from_settings(self.settings)
        self.probe = CapabilityProbe(
            self.environment,
            timeout=self.settings.probe_timeout,
            estimate_quota=self.settings.estimate_quota,
            quota_probe_limit=self.settings.quota_probe_limit,
        )
        self._clock = clock
        self._capabilities: asyncio.Future | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._backends: dict[str, MonitoredBackend] = {}
        self._instances: dict[str, asyncio.Future] = {}

    @property
    def selected_tiers(self) -> dict[str, str]:
        """Owner to tier name for every owner served so far."""
        return {owner: backend.tier_name for owner, backend in self._backends.items()}

    async def capabilities(self) -> dict[str, TierCapability]:
        """Probe results, computed once until ``invalidate()``."""
        if self._capabilities is None:
            self._capabilities = asyncio.ensure_future(self.probe.run())

        task = self._capabilities
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._capabilities is task:
                self._capabilities = None
            raise

    async def capability_report(self) -> CapabilityReport:
        return await self.probe.report(await self.capabilities())

    def invalidate(self) -> None:
        """Forget probe results and owner selections.

        Open backends stay cached until ``close()``; the next ``get``
        probes again and may pick a different tier.
        """
        self._capabilities = None
        self._backends.clear()
        logger.debug("Storage capabilities invalidated")

    async def get(self, owner: str) -> MonitoredBackend:
        """Return the backend serving ``owner``, selecting it on first use."""
        validate_owner(owner)
        if owner in self._backends:
            return self._backends[owner]

        task = self._pending.get(owner)
        if task is None:
            task = asyncio.ensure_future(self._select(owner))
            self._pending[owner] = task
            task.add_done_callback(lambda _: self._pending.pop(owner, None))
        return await asyncio.shield(task)

    async def _select(self, owner: str) -> MonitoredBackend:
        capabilities = await self.capabilities()

        for tier in TIER_NAMES:
            if tier in self.settings.disabled_tiers:
                logger.info("Skipping %s tier: disabled in configuration", tier)
                continue

            capability = capabilities.get(tier)
            if capability is not None and not capability.available:
                detail = f" ({capability.error})" if capability.error else ""
                logger.warning(
                    "Skipping %s tier: %s%s", tier, capability.reason.value, detail
                )
                continue

            try:
                backend = await self._instance(tier)
            except StorageError as e:
                logger.warning("Skipping %s tier: initialization failed: %s", tier, e)
                continue

            if tier == "ephemeral":
                logger.warning(
                    "Falling back to in-memory storage for %s; data will not persist",
                    owner,
                )
            logger.info("Selected %s tier for %s", tier, owner)
            self._backends[owner] = backend
            return backend

        raise StorageUnavailableError("No storage tier could be initialized")

    async def _instance(self, tier: str) -> MonitoredBackend:
        if tier not in self._instances:
            self._instances[tier] = asyncio.ensure_future(self._open(tier))

        task = self._instances[tier]
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._instances.get(tier) is task:
                del self._instances[tier]
            raise

    async def _open(self, tier: str) -> MonitoredBackend:
        backend = self._create(tier)
        await backend.initialize()
        return MonitoredBackend(
            backend,
            slow_threshold_ms=self.settings.slow_threshold_ms,
            history=self.settings.metrics_history,
            operation_timeout=self.settings.operation_timeout,
        )

    def _create(self, tier: str) -> BaseBackend:
        env = self.environment
        if tier == "durable":
            if env.database_path is None or env.connect is None:
                raise StorageUnavailableError("Durable storage has no database location")
            return SQLiteBackend(
                env.database_path,
                connect_timeout=self.settings.connect_timeout,
                clock=self._clock,
                connect=env.connect,
            )
        if tier == "flat":
            store = env.flat_store()
            if store is None:
                raise StorageUnavailableError("Flat storage has no data directory")
            return FlatFileBackend(
                store,
                max_size_bytes=self.settings.max_size_bytes,
                optimistic_locking=self.settings.optimistic_locking,
                clock=self._clock,
            )
        if tier == "ephemeral":
            return MemoryBackend(clock=self._clock)
        raise ValueError(f"Unknown storage tier: {tier}")

    async def create_specific(self, tier: str) -> BaseBackend:
        """Create and initialize a tier directly, skipping probe and cache.

        Raises:
            ValueError: for an unknown tier name.
            StorageError: if the tier cannot be initialized.
        """
        backend = self._create(tier)
        await backend.initialize()
        return backend

    async def health_check(self, backend: ReminderStore) -> HealthReport:
        return await backend.health_check()

    async def close(self) -> None:
        """Close every backend this selector opened."""
        tasks = list(self._instances.values())
        self._instances.clear()
        self._backends.clear()
        self._capabilities = None
        # Instances still initializing are waited for so none is left open
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for tier_backend in results:
            if isinstance(tier_backend, BaseException):
                logger.debug("Not closing tier that failed to open: %s", tier_backend)
                continue
            await tier_backend.close()
