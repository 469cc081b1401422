"""SQLite storage backend, the durable indexed tier."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import msgspec

from ...core.models import MetadataEntry, Reminder, Status, UserPreferences, as_utc
from ...exceptions import StorageTimeoutError, StorageUnavailableError
from ..query import ReminderFilter
from .base import BackendInfo, BaseBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
DEFAULT_CONNECT_TIMEOUT = 15.0

# Fixed width so lexical order in the due column equals time order
DUE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS reminders (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        status TEXT NOT NULL,
        category TEXT NOT NULL,
        priority INTEGER NOT NULL,
        due TEXT NOT NULL,
        updated_at TEXT,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reminders_owner ON reminders(owner)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_owner_status ON reminders(owner, status)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_owner_category ON reminders(owner, category)",
    "CREATE INDEX IF NOT EXISTS idx_reminders_owner_due ON reminders(owner, due)",
    """
    CREATE TABLE IF NOT EXISTS preferences (
        owner TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        data TEXT NOT NULL
    )
    """,
)

_reminder_decoder = msgspec.json.Decoder(Reminder)
_preferences_decoder = msgspec.json.Decoder(UserPreferences)
_metadata_decoder = msgspec.json.Decoder(MetadataEntry)


def format_due(value: datetime) -> str:
    return as_utc(value).strftime(DUE_FORMAT)


class SQLiteBackend(BaseBackend):
    """SQLite-based storage with per-owner secondary indexes.

    The connection is opened lazily and shared by all operations. Every
    statement runs in the default executor under a re-entrant lock, so the
    event loop never blocks on disk I/O and multi-step operations are
    single transactions.
    """

    tier_name = "durable"

    def __init__(
        self,
        db_path: Path | str,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
        connect: Callable[..., sqlite3.Connection] = sqlite3.connect,
    ):
        super().__init__(clock)
        self.db_path = Path(db_path)
        self.connect_timeout = connect_timeout
        self._connect = connect
        self._lock = threading.RLock()
        self.conn: sqlite3.Connection | None = None
        self._opened_version: int | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the connection, ensuring it exists."""
        if self.conn is None:
            raise StorageUnavailableError("Database connection not initialized")
        return self.conn

    @property
    def initialized(self) -> bool:
        return self.conn is not None

    async def initialize(self) -> None:
        """Open the database and create the schema if needed.

        Raises:
            StorageTimeoutError: if opening takes longer than connect_timeout.
            StorageUnavailableError: if SQLite refuses to open the file.
        """
        if self.initialized:
            return
        opening = asyncio.ensure_future(self._run(lambda: None))
        try:
            await asyncio.wait_for(asyncio.shield(opening), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            # The executor thread cannot be interrupted; close whatever it opens
            opening.add_done_callback(self._discard_late_open)
            raise StorageTimeoutError("open database", self.connect_timeout) from e

    def _discard_late_open(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.warning("Closing %s opened after the connect timeout", self.db_path)
        with self._lock:
            self._disconnect()

    async def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._disconnect()

    def on_version_change(self) -> None:
        """Drop the connection; the next operation reopens it."""
        with self._lock:
            logger.warning("Database %s changed version, reconnecting", self.db_path)
            self._disconnect()

    def _disconnect(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            self._opened_version = None

    def _open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        self.conn = conn
        try:
            self._ensure_schema()
        except Exception:
            self._disconnect()
            raise
        logger.debug("Opened %s (schema v%d)", self.db_path, self._opened_version)

    def _user_version(self) -> int:
        return self.connection.execute("PRAGMA user_version").fetchone()[0]

    def _ensure_schema(self) -> None:
        """Create tables and indexes once per database file."""
        version = self._user_version()
        if version < SCHEMA_VERSION:
            with self.begin_transaction():
                for statement in SCHEMA:
                    self.connection.execute(statement)
                self.connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            version = SCHEMA_VERSION
            logger.info("Created schema v%d in %s", SCHEMA_VERSION, self.db_path)
        elif version > SCHEMA_VERSION:
            logger.warning(
                "Database %s has newer schema v%d (expected v%d)",
                self.db_path,
                version,
                SCHEMA_VERSION,
            )
        self._opened_version = version

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            try:
                if self.conn is None:
                    self._open()
                elif self._user_version() != self._opened_version:
                    logger.warning(
                        "Schema version of %s changed underneath us, reconnecting",
                        self.db_path,
                    )
                    self._disconnect()
                    self._open()
                return fn(*args)
            except (sqlite3.Error, OSError) as e:
                raise StorageUnavailableError(
                    f"SQLite operation failed: {e}", details={"path": str(self.db_path)}
                ) from e

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._call, fn, *args)

    async def _execute(self, fn: Callable[..., T], *args: Any) -> T:
        if not self.initialized:
            await self.initialize()
        return await self._run(fn, *args)

    @contextmanager
    def begin_transaction(self) -> Iterator[None]:
        """Transaction context manager."""
        with self._lock:
            in_transaction = self.connection.in_transaction

            if not in_transaction:
                self.connection.execute("BEGIN")

            try:
                yield
                if not in_transaction:
                    self.connection.commit()
            except Exception:
                if not in_transaction:
                    self.connection.rollback()
                raise

    # Storage primitives

    async def _fetch(self, reminder_id: str) -> Reminder | None:
        def fetch() -> Reminder | None:
            row = self.connection.execute(
                "SELECT data FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
            return _reminder_decoder.decode(row["data"]) if row else None

        return await self._execute(fetch)

    async def _scan(self, owner: str, criteria: ReminderFilter) -> list[Reminder]:
        index, where, params = self.plan_scan(owner, criteria)

        def scan() -> list[Reminder]:
            cursor = self.connection.execute(
                f"SELECT data FROM reminders INDEXED BY {index} WHERE {where}", params
            )
            return [_reminder_decoder.decode(row["data"]) for row in cursor]

        return await self._execute(scan)

    @staticmethod
    def plan_scan(owner: str, criteria: ReminderFilter) -> tuple[str, str, tuple]:
        """Pick the index and WHERE clause that narrow a listing the most."""
        if criteria.status is not None:
            return (
                "idx_reminders_owner_status",
                "owner = ? AND status = ?",
                (owner, Status(criteria.status).value),
            )
        if criteria.category is not None:
            return (
                "idx_reminders_owner_category",
                "owner = ? AND category = ?",
                (owner, criteria.category.value),
            )
        if criteria.date_from is not None or criteria.date_to is not None:
            where = ["owner = ?"]
            params: list[Any] = [owner]
            if criteria.date_from is not None:
                where.append("due >= ?")
                params.append(format_due(criteria.date_from))
            if criteria.date_to is not None:
                where.append("due <= ?")
                params.append(format_due(criteria.date_to))
            return "idx_reminders_owner_due", " AND ".join(where), tuple(params)
        return "idx_reminders_owner", "owner = ?", (owner,)

    async def _store(
        self, reminders: list[Reminder], preferences: UserPreferences | None = None
    ) -> None:
        rows = [
            (
                r.id,
                r.owner,
                r.status.value,
                r.category.value,
                r.priority,
                format_due(r.due),
                r.updated_at.isoformat() if r.updated_at else None,
                msgspec.json.encode(r).decode(),
            )
            for r in reminders
        ]

        def store() -> None:
            with self.begin_transaction():
                self.connection.executemany(
                    """
                    INSERT INTO reminders
                        (id, owner, status, category, priority, due, updated_at, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        owner = excluded.owner,
                        status = excluded.status,
                        category = excluded.category,
                        priority = excluded.priority,
                        due = excluded.due,
                        updated_at = excluded.updated_at,
                        data = excluded.data
                    """,
                    rows,
                )
                if preferences is not None:
                    self.connection.execute(
                        "INSERT OR REPLACE INTO preferences (owner, data) VALUES (?, ?)",
                        (preferences.owner, msgspec.json.encode(preferences).decode()),
                    )

        await self._execute(store)

    async def _mark_overdue(
        self, reminder_ids: list[str], now: datetime
    ) -> dict[str, Reminder]:
        """Re-read and flip eligible rows inside one transaction."""

        def mark() -> dict[str, Reminder]:
            current: dict[str, Reminder] = {}
            promoted = 0
            with self.begin_transaction():
                for reminder_id in reminder_ids:
                    row = self.connection.execute(
                        "SELECT data FROM reminders WHERE id = ?", (reminder_id,)
                    ).fetchone()
                    if row is None:
                        continue
                    reminder = _reminder_decoder.decode(row["data"])
                    if reminder.needs_overdue_promotion(now):
                        reminder = msgspec.structs.replace(
                            reminder, status=Status.OVERDUE, updated_at=now
                        )
                        self.connection.execute(
                            "UPDATE reminders SET status = ?, updated_at = ?, data = ?"
                            " WHERE id = ? AND status = ?",
                            (
                                Status.OVERDUE.value,
                                now.isoformat(),
                                msgspec.json.encode(reminder).decode(),
                                reminder_id,
                                Status.ACTIVE.value,
                            ),
                        )
                        promoted += 1
                    current[reminder_id] = reminder
            if promoted:
                logger.debug("Promoted %d reminders to overdue", promoted)
            return current

        return await self._execute(mark)

    async def _remove(self, reminder_ids: list[str]) -> int:
        def remove() -> int:
            with self.begin_transaction():
                cursor = self.connection.executemany(
                    "DELETE FROM reminders WHERE id = ?", [(i,) for i in reminder_ids]
                )
                return cursor.rowcount

        return await self._execute(remove)

    async def _delete_by_status(self, owner: str, status: Status) -> int:
        def delete() -> int:
            with self.begin_transaction():
                cursor = self.connection.execute(
                    "DELETE FROM reminders WHERE owner = ? AND status = ?",
                    (owner, status.value),
                )
                return cursor.rowcount

        return await self._execute(delete)

    async def _purge_owner(self, owner: str) -> int:
        def purge() -> int:
            with self.begin_transaction():
                cursor = self.connection.execute(
                    "DELETE FROM reminders WHERE owner = ?", (owner,)
                )
                self.connection.execute("DELETE FROM preferences WHERE owner = ?", (owner,))
                return cursor.rowcount

        return await self._execute(purge)

    async def _fetch_preferences(self, owner: str) -> UserPreferences | None:
        def fetch() -> UserPreferences | None:
            row = self.connection.execute(
                "SELECT data FROM preferences WHERE owner = ?", (owner,)
            ).fetchone()
            return _preferences_decoder.decode(row["data"]) if row else None

        return await self._execute(fetch)

    async def _store_metadata(self, entry: MetadataEntry) -> None:
        def store() -> None:
            with self.begin_transaction():
                self.connection.execute(
                    "INSERT OR REPLACE INTO metadata (key, data) VALUES (?, ?)",
                    (entry.key, msgspec.json.encode(entry).decode()),
                )

        await self._execute(store)

    async def _fetch_metadata(self, key: str) -> MetadataEntry | None:
        def fetch() -> MetadataEntry | None:
            row = self.connection.execute(
                "SELECT data FROM metadata WHERE key = ?", (key,)
            ).fetchone()
            return _metadata_decoder.decode(row["data"]) if row else None

        return await self._execute(fetch)

    async def _fetch_all_metadata(self) -> dict[str, MetadataEntry]:
        def fetch() -> dict[str, MetadataEntry]:
            cursor = self.connection.execute("SELECT data FROM metadata ORDER BY key")
            entries = [_metadata_decoder.decode(row["data"]) for row in cursor]
            return {entry.key: entry for entry in entries}

        return await self._execute(fetch)

    async def info(self) -> BackendInfo:
        def describe() -> tuple[int, int]:
            count = self.connection.execute("SELECT COUNT(*) FROM reminders").fetchone()[0]
            page_count = self.connection.execute("PRAGMA page_count").fetchone()[0]
            page_size = self.connection.execute("PRAGMA page_size").fetchone()[0]
            return count, page_count * page_size

        count, size = await self._execute(describe)
        return BackendInfo(
            tier_name=self.tier_name,
            name="SQLite",
            persistent=True,
            size_bytes=size,
            record_count=count,
            features={
                "indexes": True,
                "transactions": True,
                "schema_version": self._opened_version,
                "path": str(self.db_path),
            },
        )
