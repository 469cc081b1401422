"""Flat key-value storage backend.

The flat tier keeps all data in a single JSON document stored under one key
of a ``FileKeyValueStore`` (one file per key, atomic temp-file + rename
writes). Every mutation rewrites the whole document, so the document size is
checked against ``max_size_bytes`` before each write; when it does not fit,
old completed reminders are evicted until it does.

Concurrent read-modify-write cycles from separate processes can lose an
update. Pass ``optimistic_locking=True`` to detect that case instead: the
stored revision is compared before writing and a mismatch raises
``ConcurrentModificationError``.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import msgspec

from ...core.models import MetadataEntry, Reminder, Status, UserPreferences, as_utc
from ...exceptions import (
    ConcurrentModificationError,
    QuotaExceededError,
    StorageUnavailableError,
)
from ..query import ReminderFilter
from .base import BackendInfo, BaseBackend

logger = logging.getLogger(__name__)

DOCUMENT_KEY = "reminders_vault_data"
DOCUMENT_VERSION = "1.0"
DEFAULT_MAX_SIZE_BYTES = 5 * 1024 * 1024
EVICTION_AGE = timedelta(days=30)


class StoreFullError(OSError):
    """Raised by FileKeyValueStore when a write would exceed its quota."""

    def __init__(self, key: str, required_bytes: int, quota_bytes: int):
        self.key = key
        self.required_bytes = required_bytes
        self.quota_bytes = quota_bytes
        super().__init__(
            errno.ENOSPC,
            f"Store quota of {quota_bytes} bytes exceeded writing {key!r} "
            f"({required_bytes} bytes needed)",
        )


class FileKeyValueStore:
    """Small string-keyed store keeping one file per key."""

    SUFFIX = ".kv"

    def __init__(self, root: Path | str, quota_bytes: int | None = None):
        self.root = Path(root)
        self.quota_bytes = quota_bytes

    def initialize(self) -> None:
        """Create the store directory."""
        self.root.mkdir(parents=True, exist_ok=True)

    def _key_to_filename(self, key: str) -> str:
        """Convert key to safe filename."""
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return f"{safe_key}{self.SUFFIX}"

    def _get_path(self, key: str) -> Path:
        return self.root / self._key_to_filename(key)

    def get(self, key: str) -> bytes | None:
        """Read the value stored under ``key``."""
        path = self._get_path(key)
        try:
            with open(path, "rb") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    return f.read()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            return None

    def set(self, key: str, value: bytes) -> None:
        """Write ``value`` under ``key`` atomically.

        Raises:
            StoreFullError: if the store would grow past its quota.
        """
        path = self._get_path(key)
        if self.quota_bytes is not None:
            current = path.stat().st_size if path.exists() else 0
            required = self.usage() - current + len(value)
            if required > self.quota_bytes:
                raise StoreFullError(key, required, self.quota_bytes)

        temp_fd, temp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with open(temp_fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())

            Path(temp_path).replace(path)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> bool:
        """Delete a key, returning whether it existed."""
        try:
            self._get_path(key).unlink()
        except FileNotFoundError:
            return False
        return True

    def keys(self) -> list[str]:
        """Stored filenames without suffix (keys after sanitizing)."""
        return sorted(p.name[: -len(self.SUFFIX)] for p in self.root.glob(f"*{self.SUFFIX}"))

    def usage(self) -> int:
        """Total bytes held by the store."""
        return sum(p.stat().st_size for p in self.root.glob(f"*{self.SUFFIX}"))


class FlatDocument(msgspec.Struct, kw_only=True, rename="camel"):
    """The single document holding every owner's data."""

    created: datetime
    version: str = DOCUMENT_VERSION
    revision: int = 0
    reminders: dict[str, Reminder] = msgspec.field(default_factory=dict)
    preferences: dict[str, UserPreferences] = msgspec.field(default_factory=dict)
    metadata: dict[str, MetadataEntry] = msgspec.field(default_factory=dict)


class _RevisionOnly(msgspec.Struct):
    revision: int = 0


_document_decoder = msgspec.json.Decoder(FlatDocument)


class FlatFileBackend(BaseBackend):
    """Whole-document storage with size cap and eviction."""

    tier_name = "flat"

    def __init__(
        self,
        store: FileKeyValueStore | Path | str,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        optimistic_locking: bool = False,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(clock)
        if not isinstance(store, FileKeyValueStore):
            store = FileKeyValueStore(store)
        self.store = store
        self.max_size_bytes = max_size_bytes
        self.optimistic_locking = optimistic_locking
        self._initialized = False

    async def initialize(self) -> None:
        """Create the store and the initial document if missing."""
        if self._initialized:
            return
        try:
            self.store.initialize()
        except OSError as e:
            raise StorageUnavailableError(f"Flat store unavailable: {e}") from e

        if self._read_raw() is None:
            self.commit_document(FlatDocument(created=self.now()))
        self._initialized = True

    async def close(self) -> None:
        """No resources to close for the flat backend."""
        self._initialized = False

    def _read_raw(self) -> bytes | None:
        try:
            return self.store.get(DOCUMENT_KEY)
        except OSError as e:
            raise StorageUnavailableError(f"Flat store read failed: {e}") from e

    def load_document(self) -> FlatDocument:
        """Read and decode the stored document.

        Raises:
            StorageUnavailableError: if the store fails or the document is
                corrupted.
        """
        raw = self._read_raw()
        if raw is None:
            return FlatDocument(created=self.now())
        try:
            return _document_decoder.decode(raw)
        except msgspec.DecodeError as e:
            raise StorageUnavailableError("Storage data corrupted", details=str(e)) from e

    def _stored_revision(self) -> int:
        raw = self._read_raw()
        if raw is None:
            return 0
        try:
            return msgspec.json.decode(raw, type=_RevisionOnly).revision
        except msgspec.DecodeError as e:
            raise StorageUnavailableError("Storage data corrupted", details=str(e)) from e

    def commit_document(self, document: FlatDocument) -> FlatDocument:
        """Write ``document`` as the next revision, evicting if it does not fit.

        Raises:
            ConcurrentModificationError: with optimistic locking, if another
                writer committed since ``document`` was loaded.
            QuotaExceededError: if the document does not fit even after
                eviction.
        """
        if self.optimistic_locking:
            stored = self._stored_revision()
            if stored != document.revision:
                raise ConcurrentModificationError(document.revision, stored)

        document = msgspec.structs.replace(
            document, reminders=dict(document.reminders), revision=document.revision + 1
        )
        payload = msgspec.json.encode(document)
        if self._try_write(payload):
            return document

        evicted = 0
        for reminder in self._eviction_candidates(document):
            del document.reminders[reminder.id]
            evicted += 1
            payload = msgspec.json.encode(document)
            if self._try_write(payload):
                logger.info("Evicted %d old completed reminders to free space", evicted)
                return document

        raise QuotaExceededError(len(payload), self._limit())

    def _try_write(self, payload: bytes) -> bool:
        if len(payload) > self.max_size_bytes:
            return False
        try:
            self.store.set(DOCUMENT_KEY, payload)
        except StoreFullError as e:
            logger.debug("Flat store full: %s", e)
            return False
        except OSError as e:
            raise StorageUnavailableError(f"Flat store write failed: {e}") from e
        return True

    def _limit(self) -> int:
        if self.store.quota_bytes is not None:
            return min(self.max_size_bytes, self.store.quota_bytes)
        return self.max_size_bytes

    def _eviction_candidates(self, document: FlatDocument) -> list[Reminder]:
        """Completed reminders untouched for EVICTION_AGE, oldest first."""
        cutoff = self.now() - EVICTION_AGE
        candidates = [
            r
            for r in document.reminders.values()
            if r.status == Status.COMPLETED
            and r.updated_at is not None
            and as_utc(r.updated_at) < cutoff
        ]
        return sorted(candidates, key=lambda r: as_utc(r.updated_at))

    # Storage primitives

    async def _fetch(self, reminder_id: str) -> Reminder | None:
        return self.load_document().reminders.get(reminder_id)

    async def _scan(self, owner: str, criteria: ReminderFilter) -> list[Reminder]:
        return [r for r in self.load_document().reminders.values() if r.owner == owner]

    async def _store(
        self, reminders: list[Reminder], preferences: UserPreferences | None = None
    ) -> None:
        document = self.load_document()
        for reminder in reminders:
            document.reminders[reminder.id] = reminder
        if preferences is not None:
            document.preferences[preferences.owner] = preferences
        self.commit_document(document)

    async def _mark_overdue(
        self, reminder_ids: list[str], now: datetime
    ) -> dict[str, Reminder]:
        document = self.load_document()
        current: dict[str, Reminder] = {}
        promoted = 0
        for reminder_id in reminder_ids:
            reminder = document.reminders.get(reminder_id)
            if reminder is None:
                continue
            if reminder.needs_overdue_promotion(now):
                reminder = msgspec.structs.replace(
                    reminder, status=Status.OVERDUE, updated_at=now
                )
                document.reminders[reminder_id] = reminder
                promoted += 1
            current[reminder_id] = reminder
        if promoted:
            self.commit_document(document)
            logger.debug("Promoted %d reminders to overdue", promoted)
        return current

    async def _remove(self, reminder_ids: list[str]) -> int:
        document = self.load_document()
        removed = [i for i in reminder_ids if document.reminders.pop(i, None) is not None]
        if removed:
            self.commit_document(document)
        return len(removed)

    async def _delete_by_status(self, owner: str, status: Status) -> int:
        document = self.load_document()
        doomed = [
            r.id
            for r in document.reminders.values()
            if r.owner == owner and r.status == status
        ]
        for reminder_id in doomed:
            del document.reminders[reminder_id]
        if doomed:
            self.commit_document(document)
        return len(doomed)

    async def _purge_owner(self, owner: str) -> int:
        document = self.load_document()
        doomed = [r.id for r in document.reminders.values() if r.owner == owner]
        for reminder_id in doomed:
            del document.reminders[reminder_id]
        had_preferences = document.preferences.pop(owner, None) is not None
        if doomed or had_preferences:
            self.commit_document(document)
        return len(doomed)

    async def _fetch_preferences(self, owner: str) -> UserPreferences | None:
        return self.load_document().preferences.get(owner)

    async def _store_metadata(self, entry: MetadataEntry) -> None:
        document = self.load_document()
        document.metadata[entry.key] = entry
        self.commit_document(document)

    async def _fetch_metadata(self, key: str) -> MetadataEntry | None:
        return self.load_document().metadata.get(key)

    async def _fetch_all_metadata(self) -> dict[str, MetadataEntry]:
        return dict(self.load_document().metadata)

    async def info(self) -> BackendInfo:
        raw = self._read_raw() or b""
        document = self.load_document()
        return BackendInfo(
            tier_name=self.tier_name,
            name="Flat file",
            persistent=True,
            size_bytes=len(raw),
            quota_bytes=self._limit(),
            record_count=len(document.reminders),
            features={
                "indexes": False,
                "transactions": False,
                "eviction": True,
                "optimistic_locking": self.optimistic_locking,
                "revision": document.revision,
                "path": str(self.store.root),
            },
        )

