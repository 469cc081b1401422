"""Tiered reminder storage.

Callers obtain a backend from a ``BackendSelector`` and program against the
``ReminderStore`` operations; the selector decides at runtime which tier
serves them.
"""

from .backends import (
    BackendInfo,
    BaseBackend,
    FileKeyValueStore,
    FlatFileBackend,
    HealthReport,
    MemoryBackend,
    ReminderStore,
    SQLiteBackend,
)
from .exchange import ExportEnvelope, build_export_envelope, parse_import_envelope
from .helpers import run_batched, with_retry, with_timeout
from .monitoring import CallRecord, MonitoredBackend
from .probe import CapabilityProbe, CapabilityReport, Recommendation, StorageEnvironment
from .query import (
    Condition,
    Operator,
    Query,
    QueryBuilder,
    ReminderFilter,
    ReminderStatistics,
    apply_filters,
    calculate_statistics,
    paginate,
    search_reminders,
    sort_reminders,
)
from .selector import BackendSelector, environment_from_settings

__all__ = [
    "BackendInfo",
    "BackendSelector",
    "BaseBackend",
    "CallRecord",
    "CapabilityProbe",
    "CapabilityReport",
    "Condition",
    "ExportEnvelope",
    "FileKeyValueStore",
    "FlatFileBackend",
    "HealthReport",
    "MemoryBackend",
    "MonitoredBackend",
    "Operator",
    "Query",
    "QueryBuilder",
    "Recommendation",
    "ReminderFilter",
    "ReminderStatistics",
    "ReminderStore",
    "SQLiteBackend",
    "StorageEnvironment",
    "apply_filters",
    "build_export_envelope",
    "calculate_statistics",
    "environment_from_settings",
    "paginate",
    "parse_import_envelope",
    "run_batched",
    "search_reminders",
    "sort_reminders",
    "with_retry",
    "with_timeout",
]
