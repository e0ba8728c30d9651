"""SQLite-backed bid storage and bid acceptance."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.models import BID_ACCEPTED, BID_PENDING, BID_REJECTED, TASK_OPEN
from marketplace_service.services.money import to_amount
from marketplace_service.services.subscriptions import watch

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_service.services.database import Database, Transaction
    from marketplace_service.services.task_store import TaskStore

_BID_SELECT_SQL = (
    "SELECT bid_id, task_id, worker_id, amount, message, status, created_at FROM bids"
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _row_to_bid(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "bid_id": row["bid_id"],
        "task_id": row["task_id"],
        "worker_id": row["worker_id"],
        "amount": Decimal(row["amount"]),
        "message": row["message"],
        "status": row["status"],
        "created_at": row["created_at"],
    }


class BidStore:
    """Persistence for bids plus the atomic accept-bid coordination."""

    def __init__(self, db: Database, tasks: TaskStore) -> None:
        self._db = db
        self._tasks = tasks
        self._logger = get_logger(__name__)

    async def place_bid(self, task_id: str, worker_id: str, amount: object, message: str) -> str:
        """
        Record a pending bid on an open task.

        Error precedence:
        1. INVALID_INPUT   amount not positive, message blank
        2. TASK_NOT_FOUND
        3. TASK_NOT_OPEN   task no longer accepting bids
        4. FORBIDDEN       worker is the task owner
        5. DUPLICATE_BID   worker already bid on this task
        """
        if not isinstance(worker_id, str) or not worker_id.strip():
            raise ServiceError(
                "INVALID_INPUT",
                "worker_id must be a non-empty string",
                400,
                {"field": "worker_id"},
            )
        bid_amount = to_amount(amount)
        if not isinstance(message, str) or not message.strip():
            raise ServiceError(
                "INVALID_INPUT",
                "message must be a non-empty string",
                400,
                {"field": "message"},
            )

        bid_id = f"bid-{uuid.uuid4()}"
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            if task["state"] != TASK_OPEN:
                raise ServiceError(
                    "TASK_NOT_OPEN",
                    "This task is no longer accepting bids",
                    409,
                    {"task_id": task_id, "state": task["state"]},
                )
            if task["owner_id"] == worker_id:
                raise ServiceError(
                    "FORBIDDEN",
                    "You cannot bid on your own task",
                    403,
                    {"task_id": task_id},
                )
            try:
                await tx.execute(
                    "INSERT INTO bids (bid_id, task_id, worker_id, amount, message, status, "
                    "created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        bid_id,
                        task_id,
                        worker_id,
                        str(bid_amount),
                        message.strip(),
                        BID_PENDING,
                        _now_iso(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ServiceError(
                    "DUPLICATE_BID",
                    "You have already placed a bid on this task",
                    409,
                    {"task_id": task_id, "worker_id": worker_id},
                ) from exc

        self._logger.info(
            "Bid placed",
            extra={"bid_id": bid_id, "task_id": task_id, "worker_id": worker_id},
        )
        return bid_id

    async def get_bid(self, bid_id: str, *, tx: Transaction | None = None) -> dict[str, Any]:
        """Fetch a bid by id, raising BID_NOT_FOUND if absent."""
        sql = f"{_BID_SELECT_SQL} WHERE bid_id = ?"
        if tx is not None:
            row = await tx.fetch_one(sql, (bid_id,))
        else:
            row = await self._db.fetch_one(sql, (bid_id,))
        if row is None:
            raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {"bid_id": bid_id})
        return _row_to_bid(row)

    async def list_bids_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Every bid on a task, newest first."""
        rows = await self._db.fetch_all(
            f"{_BID_SELECT_SQL} WHERE task_id = ? ORDER BY created_at DESC, rowid DESC",
            (task_id,),
        )
        return [_row_to_bid(row) for row in rows]

    async def list_bids_for_worker(self, worker_id: str) -> list[dict[str, Any]]:
        """Every bid a worker placed, newest first."""
        rows = await self._db.fetch_all(
            f"{_BID_SELECT_SQL} WHERE worker_id = ? ORDER BY created_at DESC, rowid DESC",
            (worker_id,),
        )
        return [_row_to_bid(row) for row in rows]

    def watch_bids(
        self,
        *,
        poll_interval: float,
        task_id: str | None = None,
        worker_id: str | None = None,
    ) -> AsyncGenerator[list[dict[str, Any]], None]:
        """Live bid list for a task or for a worker."""
        if task_id is not None:
            return watch(self._db, lambda: self.list_bids_for_task(task_id), poll_interval)
        if worker_id is not None:
            return watch(self._db, lambda: self.list_bids_for_worker(worker_id), poll_interval)
        msg = "watch_bids requires task_id or worker_id"
        raise ValueError(msg)

    async def accept_bid(self, bid_id: str, *, tx: Transaction | None = None) -> dict[str, Any]:
        """
        Accept a bid and assign its worker, all in one commit.

        Inside a single write transaction:
        1. load the bid (BID_NOT_FOUND)
        2. move the task open -> in progress with the bid's worker and
           amount, conditional on the task still being open (TASK_NOT_OPEN)
        3. mark the bid accepted
        4. reject every other pending bid on the task

        Of two concurrent accepts for the same task exactly one succeeds;
        the other sees TASK_NOT_OPEN and changes nothing.
        """
        async with self._db.transaction(tx) as tx:
            bid = await self.get_bid(bid_id, tx=tx)
            task = await self._tasks.assign_worker(
                bid["task_id"],
                bid["worker_id"],
                bid["amount"],
                tx=tx,
            )
            await tx.execute(
                "UPDATE bids SET status = ? WHERE bid_id = ?",
                (BID_ACCEPTED, bid_id),
            )
            rejected = await tx.execute(
                "UPDATE bids SET status = ? WHERE task_id = ? AND bid_id != ? AND status = ?",
                (BID_REJECTED, bid["task_id"], bid_id, BID_PENDING),
            )
            accepted = await self.get_bid(bid_id, tx=tx)

        self._logger.info(
            "Bid accepted",
            extra={
                "bid_id": bid_id,
                "task_id": bid["task_id"],
                "worker_id": bid["worker_id"],
                "rejected_bids": rejected,
            },
        )
        return {"bid": accepted, "task": task, "rejected_bids": rejected}
