"""Storage tiers.

Every tier implements the ``ReminderStore`` operations through
``BaseBackend``:

- **SQLiteBackend** (``durable``): embedded database with per-owner indexes
- **FlatFileBackend** (``flat``): one JSON document with size cap and eviction
- **MemoryBackend** (``ephemeral``): in-process dicts, lost on exit
"""

from .base import BackendInfo, BaseBackend, HealthReport, ReminderStore
from .filesystem import FileKeyValueStore, FlatDocument, FlatFileBackend, StoreFullError
from .memory import MemoryBackend
from .sqlite import SQLiteBackend

__all__ = [
    "BackendInfo",
    "BaseBackend",
    "FileKeyValueStore",
    "FlatDocument",
    "FlatFileBackend",
    "HealthReport",
    "MemoryBackend",
    "ReminderStore",
    "SQLiteBackend",
    "StoreFullError",
]
