"""In-memory storage backend, the tier of last resort."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from ...core.models import MetadataEntry, Reminder, Status, UserPreferences
from ..query import ReminderFilter
from .base import BackendInfo, BaseBackend

logger = logging.getLogger(__name__)

VOLATILE_WARNING = "Data is kept in memory only and is lost when the process exits"


class MemoryBackend(BaseBackend):
    """In-memory storage backend.

    Always available. Records are frozen structs, so shallow copies of the
    tables are enough to stage a multi-step change and swap it in at once.
    """

    tier_name = "ephemeral"

    def __init__(self, clock: Callable[[], datetime] | None = None):
        super().__init__(clock)
        self._reminders: dict[str, Reminder] = {}
        self._preferences: dict[str, UserPreferences] = {}
        self._metadata: dict[str, MetadataEntry] = {}

    async def initialize(self) -> None:
        """Initialize the backend (nothing to open for memory)."""
        logger.warning("Using in-memory storage: %s", VOLATILE_WARNING)

    async def close(self) -> None:
        """Close backend (no-op for memory)."""
        pass

    @contextmanager
    def begin_transaction(
        self,
    ) -> Iterator[tuple[dict[str, Reminder], dict[str, UserPreferences]]]:
        """Yield staged copies of the tables; they replace the live ones on success."""
        reminders = dict(self._reminders)
        preferences = dict(self._preferences)
        yield reminders, preferences
        self._reminders = reminders
        self._preferences = preferences

    async def _fetch(self, reminder_id: str) -> Reminder | None:
        return self._reminders.get(reminder_id)

    async def _scan(self, owner: str, criteria: ReminderFilter) -> list[Reminder]:
        return [r for r in self._reminders.values() if r.owner == owner]

    async def _store(
        self, reminders: list[Reminder], preferences: UserPreferences | None = None
    ) -> None:
        with self.begin_transaction() as (staged, staged_preferences):
            for reminder in reminders:
                staged[reminder.id] = reminder
            if preferences is not None:
                staged_preferences[preferences.owner] = preferences

    async def _remove(self, reminder_ids: list[str]) -> int:
        with self.begin_transaction() as (staged, _):
            return sum(1 for i in reminder_ids if staged.pop(i, None) is not None)

    async def _delete_by_status(self, owner: str, status: Status) -> int:
        with self.begin_transaction() as (staged, _):
            doomed = [
                r.id for r in staged.values() if r.owner == owner and r.status == status
            ]
            for reminder_id in doomed:
                del staged[reminder_id]
            return len(doomed)

    async def _purge_owner(self, owner: str) -> int:
        with self.begin_transaction() as (staged, staged_preferences):
            doomed = [r.id for r in staged.values() if r.owner == owner]
            for reminder_id in doomed:
                del staged[reminder_id]
            staged_preferences.pop(owner, None)
            return len(doomed)

    async def _fetch_preferences(self, owner: str) -> UserPreferences | None:
        return self._preferences.get(owner)

    async def _store_metadata(self, entry: MetadataEntry) -> None:
        self._metadata[entry.key] = entry

    async def _fetch_metadata(self, key: str) -> MetadataEntry | None:
        return self._metadata.get(key)

    async def _fetch_all_metadata(self) -> dict[str, MetadataEntry]:
        return dict(self._metadata)

    async def info(self) -> BackendInfo:
        return BackendInfo(
            tier_name=self.tier_name,
            name="Memory",
            persistent=False,
            record_count=len(self._reminders),
            features={"indexes": False, "transactions": True},
            warning=VOLATILE_WARNING,
        )
