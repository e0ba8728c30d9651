"""SQLite persistence via aiosqlite: reads, atomic write transactions, change signals."""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL,
    required_equipment TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    city TEXT NOT NULL,
    address TEXT,
    scheduled_date TEXT NOT NULL,
    scheduled_time TEXT NOT NULL,
    budget TEXT NOT NULL,
    accepted_bid_amount TEXT,
    is_instant_job INTEGER NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'open',
    assigned_worker_id TEXT,
    completion_photo_url TEXT,
    worker_arrived INTEGER NOT NULL DEFAULT 0,
    completion_requested INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_city_state ON tasks(city, state);
CREATE INDEX IF NOT EXISTS idx_tasks_worker_state ON tasks(assigned_worker_id, state);

CREATE TABLE IF NOT EXISTS bids (
    bid_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    worker_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    message TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    UNIQUE(task_id, worker_id)
);

CREATE INDEX IF NOT EXISTS idx_bids_worker ON bids(worker_id, created_at);

CREATE TABLE IF NOT EXISTS escrow (
    task_id TEXT PRIMARY KEY,
    amount TEXT NOT NULL,
    platform_fee TEXT NOT NULL,
    total TEXT NOT NULL,
    status TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT PRIMARY KEY,
    balance TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    tx_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES wallets(user_id),
    type TEXT NOT NULL,
    amount TEXT NOT NULL,
    balance_after TEXT NOT NULL,
    description TEXT NOT NULL,
    task_id TEXT,
    reference TEXT,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_wallet_tx_user ON wallet_transactions(user_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_wallet_tx_reference
    ON wallet_transactions(reference) WHERE reference IS NOT NULL;

CREATE TABLE IF NOT EXISTS notifications (
    notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    related_task_id TEXT,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, notification_id);

CREATE TABLE IF NOT EXISTS reviews (
    review_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL UNIQUE,
    worker_id TEXT NOT NULL,
    reviewer_id TEXT NOT NULL,
    category TEXT NOT NULL,
    star_rating INTEGER NOT NULL CHECK (star_rating BETWEEN 1 AND 5),
    text_review TEXT NOT NULL,
    task_specific_rating TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reviews_worker ON reviews(worker_id, timestamp);
"""


def _unavailable(exc: BaseException) -> ServiceError:
    return ServiceError(
        "UNAVAILABLE",
        "Database is temporarily unavailable",
        503,
        {"reason": type(exc).__name__},
    )


def _commit_failed(reason: str) -> ServiceError:
    return ServiceError(
        "COMMIT_FAILED",
        "The write could not be committed, please retry",
        409,
        {"reason": reason},
    )


class Transaction:
    """Handle for statements executed inside one atomic write."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._connection = connection

    async def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Read a single row as seen by this transaction."""
        async with self._connection.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Read all matching rows as seen by this transaction."""
        async with self._connection.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Run a write statement and return the affected row count."""
        async with self._connection.execute(sql, params) as cursor:
            return int(cursor.rowcount)


class Database:
    """
    Async SQLite database shared by every store.

    Two connections are opened in WAL mode: a writer that runs one
    ``BEGIN IMMEDIATE`` transaction at a time, and a reader that only
    ever observes committed data. Each successful commit bumps
    ``version`` and wakes subscribers waiting in ``wait_for_change``.

    Reads that exceed ``timeout_seconds`` raise UNAVAILABLE. Writes that
    cannot obtain the write lock, or whose commit fails, raise
    COMMIT_FAILED. Both are retryable.
    """

    def __init__(self, db_path: str, timeout_seconds: float) -> None:
        self._db_path = db_path
        self._timeout = timeout_seconds
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._changed = asyncio.Condition()
        self._version = 0
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open both connections and create the schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        busy_timeout_ms = int(self._timeout * 1000)

        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        self._writer = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._writer.row_factory = aiosqlite.Row
        await self._writer.execute("PRAGMA journal_mode=WAL")
        await self._writer.execute("PRAGMA foreign_keys=ON")
        await self._writer.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        await self._writer.executescript(_SCHEMA)

        self._reader = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._reader.row_factory = aiosqlite.Row
        await self._reader.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")

        self._logger.info("Database connected", extra={"db_path": self._db_path})

    async def close(self) -> None:
        """Close both connections."""
        if self._reader is not None:
            await self._reader.close()
            self._reader = None
        if self._writer is not None:
            await self._writer.close()
            self._writer = None

    def _require(self, connection: aiosqlite.Connection | None) -> aiosqlite.Connection:
        if connection is None:
            msg = "Database not connected"
            raise RuntimeError(msg)
        return connection

    # ------------------------------------------------------------------
    # Reads (committed data only)
    # ------------------------------------------------------------------

    async def _bounded(self, operation: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout)
        except TimeoutError as exc:
            raise _unavailable(exc) from exc
        except sqlite3.OperationalError as exc:
            raise _unavailable(exc) from exc

    async def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Point read."""
        reader = Transaction(self._require(self._reader))
        return await self._bounded(reader.fetch_one(sql, params))

    async def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Filtered and ordered list read."""
        reader = Transaction(self._require(self._reader))
        return await self._bounded(reader.fetch_all(sql, params))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self, outer: Transaction | None = None) -> AsyncIterator[Transaction]:
        """
        Run a block as one all-or-nothing write.

        Passing ``outer`` joins an already open transaction instead of
        starting a new one, so store operations compose into a single
        commit. Any exception inside the block rolls everything back.
        """
        if outer is not None:
            yield outer
            return

        writer = self._require(self._writer)
        try:
            await asyncio.wait_for(self._write_lock.acquire(), timeout=self._timeout)
        except TimeoutError as exc:
            raise _commit_failed("write lock timeout") from exc

        try:
            try:
                await writer.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise _commit_failed(str(exc)) from exc

            try:
                yield Transaction(writer)
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    await writer.execute("ROLLBACK")
                raise

            try:
                await writer.execute("COMMIT")
            except sqlite3.Error as exc:
                with contextlib.suppress(sqlite3.Error):
                    await writer.execute("ROLLBACK")
                raise _commit_failed(str(exc)) from exc
        finally:
            self._write_lock.release()

        await self._notify_change()

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Single-statement write in its own transaction."""
        async with self.transaction() as tx:
            return await tx.execute(sql, params)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        """Number of commits made through this instance."""
        return self._version

    async def _notify_change(self) -> None:
        async with self._changed:
            self._version += 1
            self._changed.notify_all()

    async def wait_for_change(self, version: int, timeout: float) -> int:
        """
        Wait until a commit moves past ``version`` or ``timeout`` elapses.

        Returns the current version. Writes from other processes are
        not signalled, so callers re-read on timeout as well.
        """
        async with self._changed:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._changed.wait_for(lambda: self._version != version),
                    timeout=timeout,
                )
            return self._version
