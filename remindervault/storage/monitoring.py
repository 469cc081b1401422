"""Latency-observing wrapper around a storage tier.

``MonitoredBackend`` exposes the same operations as the wrapped backend and
forwards each call unchanged, timing it on the way. Results and exceptions
pass through untouched; only a ``CallRecord`` is kept per call. With an
``operation_timeout`` every call is bounded and fails with
``StorageTimeoutError`` once the limit passes.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Mapping
from datetime import datetime
from typing import Any, TypeVar

import msgspec

from ..core.models import MetadataEntry, Reminder, Status, UserPreferences, utcnow
from ..exceptions import StorageTimeoutError
from .backends.base import BackendInfo, HealthReport, ReminderStore
from .exchange import ExportEnvelope
from .helpers import with_timeout
from .query import ReminderFilter, ReminderStatistics

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOW_CALL_MS = 1000.0
DEFAULT_HISTORY = 500


class CallRecord(msgspec.Struct, frozen=True, kw_only=True, rename="camel"):
    """One observed contract call."""

    operation: str
    duration_ms: float
    outcome: str
    error: str | None = None
    timestamp: datetime = msgspec.field(default_factory=utcnow)


class MonitoredBackend:
    """Forwards every contract call to ``backend`` and records its latency."""

    def __init__(
        self,
        backend: ReminderStore,
        slow_threshold_ms: float = SLOW_CALL_MS,
        history: int = DEFAULT_HISTORY,
        operation_timeout: float | None = None,
    ):
        self.backend = backend
        self.operation_timeout = operation_timeout
        self.slow_threshold_ms = slow_threshold_ms
        self.calls: deque[CallRecord] = deque(maxlen=history)

    @property
    def tier_name(self) -> str:
        return self.backend.tier_name

    def __repr__(self) -> str:
        return f"MonitoredBackend({self.backend!r})"

    async def _observe(self, operation: str, call: Awaitable[T]) -> T:
        start = time.perf_counter()
        if self.operation_timeout is not None:
            call = with_timeout(
                call, self.operation_timeout, f"{self.tier_name}.{operation}"
            )
        try:
            result = await call
        except StorageTimeoutError as e:
            self._record(operation, start, "timeout", str(e))
            raise
        except Exception as e:
            self._record(operation, start, "error", str(e))
            raise
        self._record(operation, start, "success")
        return result

    def _record(
        self, operation: str, start: float, outcome: str, error: str | None = None
    ) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        self.calls.append(
            CallRecord(
                operation=operation, duration_ms=duration_ms, outcome=outcome, error=error
            )
        )
        if duration_ms > self.slow_threshold_ms:
            logger.warning(
                "Slow storage operation %s.%s took %.0fms (%s)",
                self.tier_name,
                operation,
                duration_ms,
                outcome,
            )
        else:
            logger.debug(
                "%s.%s took %.1fms (%s)", self.tier_name, operation, duration_ms, outcome
            )

    def summary(self) -> dict[str, dict[str, Any]]:
        """Per-operation call counts, error counts and latencies."""
        result: dict[str, dict[str, Any]] = {}
        for record in self.calls:
            stats = result.setdefault(
                record.operation, {"calls": 0, "errors": 0, "total_ms": 0.0, "max_ms": 0.0}
            )
            stats["calls"] += 1
            stats["errors"] += record.outcome != "success"
            stats["total_ms"] += record.duration_ms
            stats["max_ms"] = max(stats["max_ms"], record.duration_ms)

        for stats in result.values():
            stats["avg_ms"] = round(stats.pop("total_ms") / stats["calls"], 3)
        return result

    async def initialize(self) -> None:
        return await self._observe("initialize", self.backend.initialize())

    async def close(self) -> None:
        return await self._observe("close", self.backend.close())

    async def save(self, reminder: Reminder) -> Reminder:
        return await self._observe("save", self.backend.save(reminder))

    async def list(
        self, owner: str, filters: ReminderFilter | Mapping[str, Any] | None = None
    ) -> list[Reminder]:
        return await self._observe("list", self.backend.list(owner, filters))

    async def get_by_id(self, reminder_id: str) -> Reminder | None:
        return await self._observe("get_by_id", self.backend.get_by_id(reminder_id))

    async def update(self, reminder_id: str, changes: Mapping[str, Any]) -> Reminder:
        return await self._observe("update", self.backend.update(reminder_id, changes))

    async def delete(self, reminder_id: str) -> bool:
        return await self._observe("delete", self.backend.delete(reminder_id))

    async def delete_by_status(self, owner: str, status: Status | str) -> int:
        return await self._observe(
            "delete_by_status", self.backend.delete_by_status(owner, status)
        )

    async def save_preferences(
        self, owner: str, settings: Mapping[str, Any]
    ) -> UserPreferences:
        return await self._observe(
            "save_preferences", self.backend.save_preferences(owner, settings)
        )

    async def get_preferences(self, owner: str) -> UserPreferences | None:
        return await self._observe("get_preferences", self.backend.get_preferences(owner))

    async def save_metadata(self, key: str, value: Any) -> MetadataEntry:
        return await self._observe("save_metadata", self.backend.save_metadata(key, value))

    async def get_metadata(self, key: str) -> Any:
        return await self._observe("get_metadata", self.backend.get_metadata(key))

    async def statistics(self, owner: str) -> ReminderStatistics:
        return await self._observe("statistics", self.backend.statistics(owner))

    async def export_all(self, owner: str) -> ExportEnvelope:
        return await self._observe("export_all", self.backend.export_all(owner))

    async def import_all(
        self, envelope: ExportEnvelope | Mapping[str, Any] | bytes | str, owner: str
    ) -> int:
        return await self._observe("import_all", self.backend.import_all(envelope, owner))

    async def clear(self, owner: str) -> int:
        return await self._observe("clear", self.backend.clear(owner))

    async def info(self) -> BackendInfo:
        return await self._observe("info", self.backend.info())

    async def health_check(self) -> HealthReport:
        return await self._observe("health_check", self.backend.health_check())
