"""Capability probing for the persistent storage tiers.

A tier is only considered available after it has actually been exercised:
the durable probe creates, writes and deletes a throwaway database and the
flat probe round-trips a sentinel key. Presence of the API alone is not
enough, since a read-only home directory or a sandbox can refuse writes at
runtime.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import msgspec

from ..core.models import CapabilityReason, TierCapability, utcnow
from .backends.filesystem import FileKeyValueStore

logger = logging.getLogger(__name__)

PROBE_DATABASE = "__capability_probe__.sqlite3"
FLAT_PROBE_KEY = "__storage_capability_test__"
FLAT_PROBE_VALUE = b"capability_test_data"
QUOTA_PROBE_KEY = "__quota_test__"

DEFAULT_PROBE_TIMEOUT = 3.0
QUOTA_PROBE_START = 1024
DEFAULT_QUOTA_PROBE_LIMIT = 10 * 1024 * 1024
LOW_QUOTA_BYTES = 1024 * 1024

# Error text seen when the host refuses writes rather than failing outright
RESTRICTED_SIGNATURES = (
    "readonly",
    "read-only",
    "permission denied",
    "access denied",
    "blocked",
    "private",
)


@dataclass
class StorageEnvironment:
    """Where the persistent tiers keep their files and how to open them.

    ``data_dir=None`` means the host offers no persistent location and
    ``connect=None`` that SQLite support is missing.
    """

    data_dir: Path | None
    flat_quota_bytes: int | None = None
    connect: Callable[..., sqlite3.Connection] | None = sqlite3.connect
    database_name: str = "reminders.sqlite3"
    flat_store_dir: str = "flat"

    def __post_init__(self):
        if self.data_dir is not None:
            self.data_dir = Path(self.data_dir).expanduser()

    @property
    def database_path(self) -> Path | None:
        if self.data_dir is None:
            return None
        return self.data_dir / self.database_name

    def flat_store(self) -> FileKeyValueStore | None:
        if self.data_dir is None:
            return None
        return FileKeyValueStore(
            self.data_dir / self.flat_store_dir, quota_bytes=self.flat_quota_bytes
        )


class Recommendation(msgspec.Struct, frozen=True):
    """Advice derived from probe results."""

    severity: str
    message: str
    action: str


class CapabilityReport(msgspec.Struct, kw_only=True):
    """Probe results plus recommendations, for diagnostics output."""

    timestamp: datetime
    capabilities: dict[str, TierCapability]
    recommendations: list[Recommendation]


def is_restricted(error: BaseException) -> bool:
    """Whether an error means the host refuses writes on purpose."""
    if isinstance(error, PermissionError):
        return True
    message = str(error).lower()
    return any(signature in message for signature in RESTRICTED_SIGNATURES)


def build_recommendations(capabilities: dict[str, TierCapability]) -> list[Recommendation]:
    """Turn probe results into user-facing advice."""
    durable = capabilities.get("durable")
    flat = capabilities.get("flat")
    recommendations = []

    if durable is not None and not durable.available:
        if durable.reason == CapabilityReason.RESTRICTED_MODE:
            recommendations.append(
                Recommendation(
                    severity="warning",
                    message="Restricted storage mode detected. Data may not persist "
                    "between sessions.",
                    action="Run with a writable data directory for data persistence.",
                )
            )
        else:
            recommendations.append(
                Recommendation(
                    severity="info",
                    message="Durable storage not available. Using flat file fallback.",
                    action="Check SQLite support and the data directory for better "
                    "performance and capacity.",
                )
            )

    if flat is None or not flat.available:
        if durable is None or not durable.available:
            recommendations.append(
                Recommendation(
                    severity="error",
                    message="No persistent storage available.",
                    action="Configure a writable data directory.",
                )
            )
    elif (
        flat.quota_estimate_bytes is not None
        and flat.quota_estimate_bytes < LOW_QUOTA_BYTES
    ):
        recommendations.append(
            Recommendation(
                severity="warning",
                message="Limited storage space available.",
                action="Free disk space or raise the flat store quota.",
            )
        )

    return recommendations


class CapabilityProbe:
    """Exercises each persistent tier once and reports what works."""

    def __init__(
        self,
        environment: StorageEnvironment,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        estimate_quota: bool = True,
        quota_probe_limit: int = DEFAULT_QUOTA_PROBE_LIMIT,
    ):
        self.environment = environment
        self.timeout = timeout
        self.estimate_quota = estimate_quota
        self.quota_probe_limit = quota_probe_limit

    async def run(self) -> dict[str, TierCapability]:
        """Probe the durable and flat tiers."""
        capabilities = {
            "durable": await self.probe_durable(),
            "flat": await self.probe_flat(),
        }
        for tier, capability in capabilities.items():
            logger.debug(
                "Probed %s tier: available=%s reason=%s",
                tier,
                capability.available,
                capability.reason.value,
            )
        return capabilities

    async def report(
        self, capabilities: dict[str, TierCapability] | None = None
    ) -> CapabilityReport:
        """Build a report, probing first unless results are supplied."""
        if capabilities is None:
            capabilities = await self.run()
        return CapabilityReport(
            timestamp=utcnow(),
            capabilities=capabilities,
            recommendations=build_recommendations(capabilities),
        )

    async def probe_durable(self) -> TierCapability:
        env = self.environment
        checks: dict[str, Any] = {
            "api_exists": env.connect is not None,
            "location": env.data_dir is not None,
            "operational": False,
            "restricted_mode": False,
        }
        if env.connect is None or env.data_dir is None:
            return TierCapability(
                available=False, reason=CapabilityReason.API_MISSING, checks=checks
            )

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self._exercise_durable), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return TierCapability(
                available=False,
                reason=CapabilityReason.OPERATIONAL_FAILURE,
                error=f"Durable probe timed out after {self.timeout:g}s",
                checks=checks,
            )
        except Exception as e:
            if is_restricted(e):
                checks["restricted_mode"] = True
                return TierCapability(
                    available=False,
                    reason=CapabilityReason.RESTRICTED_MODE,
                    error=str(e),
                    checks=checks,
                )
            return TierCapability(
                available=False,
                reason=CapabilityReason.OPERATIONAL_FAILURE,
                error=str(e),
                checks=checks,
            )

        checks["operational"] = True
        return TierCapability(available=True, checks=checks)

    def _exercise_durable(self) -> None:
        env = self.environment
        env.data_dir.mkdir(parents=True, exist_ok=True)
        path = env.data_dir / PROBE_DATABASE

        conn = env.connect(str(path), check_same_thread=False)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS probe (id INTEGER PRIMARY KEY, data TEXT)")
            conn.execute("INSERT INTO probe (data) VALUES (?)", ("test",))
            conn.commit()
        finally:
            conn.close()
            self._discard_probe_files(path)

    def _discard_probe_files(self, path: Path) -> None:
        sidecars = [path.with_name(path.name + s) for s in ("-wal", "-shm", "-journal")]
        for candidate in (path, *sidecars):
            try:
                candidate.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove probe file %s: %s", candidate, e)

    async def probe_flat(self) -> TierCapability:
        store = self.environment.flat_store()
        checks: dict[str, Any] = {
            "api_exists": store is not None,
            "writable": False,
            "quota": None,
        }
        if store is None:
            return TierCapability(
                available=False, reason=CapabilityReason.API_MISSING, checks=checks
            )

        loop = asyncio.get_running_loop()
        try:
            checks["writable"] = await loop.run_in_executor(None, self._exercise_flat, store)
        except Exception as e:
            reason = (
                CapabilityReason.RESTRICTED_MODE
                if is_restricted(e)
                else CapabilityReason.OPERATIONAL_FAILURE
            )
            return TierCapability(available=False, reason=reason, error=str(e), checks=checks)

        if not checks["writable"]:
            return TierCapability(
                available=False,
                reason=CapabilityReason.OPERATIONAL_FAILURE,
                error="Sentinel value did not read back",
                checks=checks,
            )

        quota = None
        if self.estimate_quota:
            try:
                quota = await loop.run_in_executor(None, self.estimate_flat_quota, store)
            except Exception as e:
                logger.warning("Flat quota estimate failed: %s", e)
            checks["quota"] = quota
        return TierCapability(available=True, quota_estimate_bytes=quota, checks=checks)

    def _exercise_flat(self, store: FileKeyValueStore) -> bool:
        store.initialize()
        store.set(FLAT_PROBE_KEY, FLAT_PROBE_VALUE)
        retrieved = store.get(FLAT_PROBE_KEY)
        store.delete(FLAT_PROBE_KEY)
        return retrieved == FLAT_PROBE_VALUE

    def estimate_flat_quota(self, store: FileKeyValueStore) -> int:
        """Largest payload that could be written, doubling from 1 KiB.

        Advisory only; the result is never used to refuse a write.
        """
        size = QUOTA_PROBE_START
        max_size = 0
        try:
            while size <= self.quota_probe_limit:
                try:
                    store.set(QUOTA_PROBE_KEY, b"x" * size)
                except OSError:
                    break
                max_size = size
                size *= 2
        finally:
            try:
                store.delete(QUOTA_PROBE_KEY)
            except OSError as e:
                logger.warning("Could not remove quota probe value: %s", e)
        return max_size
