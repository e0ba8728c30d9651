"""Ledger business logic: wallets, transactions and task escrow."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.models import ESCROW_LOCKED, ESCROW_RELEASED, TX_CREDIT, TX_DEBIT
from marketplace_service.services.money import calculate_platform_fee, quantize, to_amount
from marketplace_service.services.subscriptions import watch

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_service.services.database import Database, Transaction

_TX_SELECT_SQL = (
    "SELECT tx_id, user_id, type, amount, balance_after, description, task_id, reference, "
    "timestamp FROM wallet_transactions"
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _row_to_escrow(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "task_id": row["task_id"],
        "amount": Decimal(row["amount"]),
        "platform_fee": Decimal(row["platform_fee"]),
        "total": Decimal(row["total"]),
        "status": row["status"],
        "timestamp": row["timestamp"],
    }


def _row_to_transaction(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "tx_id": row["tx_id"],
        "user_id": row["user_id"],
        "type": row["type"],
        "amount": Decimal(row["amount"]),
        "balance_after": Decimal(row["balance_after"]),
        "description": row["description"],
        "task_id": row["task_id"],
        "reference": row["reference"],
        "timestamp": row["timestamp"],
    }


class Ledger:
    """
    Manages wallets, their transaction history, and task escrow.

    Every balance change and its transaction entry are written in a
    single database transaction, so a balance always equals the sum of
    credits minus debits and concurrent debits cannot both pass the
    funds check.
    """

    def __init__(self, db: Database, platform_fee: Decimal) -> None:
        self._db = db
        self._platform_fee = quantize(Decimal(platform_fee))
        self._logger = get_logger(__name__)

    def calculate_platform_fee(self, amount: Decimal) -> Decimal:
        """Fee charged on top of ``amount``."""
        return calculate_platform_fee(amount, self._platform_fee)

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    async def find_escrow(
        self,
        task_id: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any] | None:
        """Escrow record for a task, or None."""
        sql = (
            "SELECT task_id, amount, platform_fee, total, status, timestamp "
            "FROM escrow WHERE task_id = ?"
        )
        if tx is not None:
            row = await tx.fetch_one(sql, (task_id,))
        else:
            row = await self._db.fetch_one(sql, (task_id,))
        return _row_to_escrow(row) if row is not None else None

    async def get_escrow(self, task_id: str) -> dict[str, Any]:
        """Escrow record for a task, raising ESCROW_NOT_FOUND if absent."""
        escrow = await self.find_escrow(task_id)
        if escrow is None:
            raise ServiceError(
                "ESCROW_NOT_FOUND",
                "No escrow exists for this task",
                404,
                {"task_id": task_id},
            )
        return escrow

    async def lock_escrow(
        self,
        task_id: str,
        amount: object,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """
        Hold ``amount`` plus the platform fee for a task.

        Re-locking replaces a previous locked record. A released escrow
        is final and cannot be locked again.
        """
        lock_amount = to_amount(amount)
        fee = self.calculate_platform_fee(lock_amount)
        total = lock_amount + fee
        now = _now_iso()

        async with self._db.transaction(tx) as tx:
            existing = await self.find_escrow(task_id, tx=tx)
            if existing is not None and existing["status"] == ESCROW_RELEASED:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    "Escrow for this task was already released",
                    409,
                    {"task_id": task_id},
                )
            await tx.execute(
                "INSERT INTO escrow (task_id, amount, platform_fee, total, status, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(task_id) DO UPDATE SET amount = excluded.amount, "
                "platform_fee = excluded.platform_fee, total = excluded.total, "
                "status = excluded.status, timestamp = excluded.timestamp",
                (task_id, str(lock_amount), str(fee), str(total), ESCROW_LOCKED, now),
            )

        self._logger.info(
            "Escrow locked",
            extra={"task_id": task_id, "amount": str(lock_amount), "total": str(total)},
        )
        return {
            "task_id": task_id,
            "amount": lock_amount,
            "platform_fee": fee,
            "total": total,
            "status": ESCROW_LOCKED,
            "timestamp": now,
        }

    async def release_escrow(
        self,
        task_id: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """Mark a task's escrow released. Releasing twice returns the released record."""
        async with self._db.transaction(tx) as tx:
            escrow = await self.find_escrow(task_id, tx=tx)
            if escrow is None:
                raise ServiceError(
                    "ESCROW_NOT_FOUND",
                    "No escrow exists for this task",
                    404,
                    {"task_id": task_id},
                )
            if escrow["status"] == ESCROW_RELEASED:
                return escrow
            now = _now_iso()
            await tx.execute(
                "UPDATE escrow SET status = ?, timestamp = ? WHERE task_id = ?",
                (ESCROW_RELEASED, now, task_id),
            )

        self._logger.info("Escrow released", extra={"task_id": task_id})
        return {**escrow, "status": ESCROW_RELEASED, "timestamp": now}

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def _find_by_reference(self, tx: Transaction, reference: str) -> dict[str, Any] | None:
        row = await tx.fetch_one(f"{_TX_SELECT_SQL} WHERE reference = ?", (reference,))
        return _row_to_transaction(row) if row is not None else None

    async def _append_transaction(
        self,
        tx: Transaction,
        user_id: str,
        tx_type: str,
        amount: Decimal,
        balance_after: Decimal,
        description: str,
        task_id: str | None,
        reference: str | None,
    ) -> dict[str, Any]:
        tx_id = f"tx-{uuid.uuid4()}"
        now = _now_iso()
        await tx.execute(
            "UPDATE wallets SET balance = ?, updated_at = ? WHERE user_id = ?",
            (str(balance_after), now, user_id),
        )
        await tx.execute(
            "INSERT INTO wallet_transactions (tx_id, user_id, type, amount, balance_after, "
            "description, task_id, reference, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tx_id,
                user_id,
                tx_type,
                str(amount),
                str(balance_after),
                description,
                task_id,
                reference,
                now,
            ),
        )
        return {
            "tx_id": tx_id,
            "user_id": user_id,
            "type": tx_type,
            "amount": amount,
            "balance_after": balance_after,
            "description": description,
            "task_id": task_id,
            "reference": reference,
            "timestamp": now,
        }

    async def credit_wallet(
        self,
        user_id: str,
        amount: object,
        description: str,
        task_id: str | None = None,
        reference: str | None = None,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """
        Add funds to a wallet, creating it on first use.

        A credit carrying an already-used ``reference`` is not applied
        again: the original transaction is returned when the amount
        matches, PAYLOAD_MISMATCH is raised when it does not.
        """
        credit_amount = to_amount(amount)

        async with self._db.transaction(tx) as tx:
            if reference is not None:
                existing = await self._find_by_reference(tx, reference)
                if existing is not None:
                    if existing["user_id"] != user_id or existing["amount"] != credit_amount:
                        raise ServiceError(
                            "PAYLOAD_MISMATCH",
                            "Reference was already used for a different credit",
                            400,
                            {"reference": reference},
                        )
                    return existing

            wallet = await tx.fetch_one("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
            if wallet is None:
                await tx.execute(
                    "INSERT INTO wallets (user_id, balance, updated_at) VALUES (?, ?, ?)",
                    (user_id, "0.00", _now_iso()),
                )
                balance = Decimal("0.00")
            else:
                balance = Decimal(wallet["balance"])

            entry = await self._append_transaction(
                tx,
                user_id,
                TX_CREDIT,
                credit_amount,
                balance + credit_amount,
                description,
                task_id,
                reference,
            )

        self._logger.info(
            "Wallet credited",
            extra={"user_id": user_id, "amount": str(credit_amount), "task_id": task_id},
        )
        return entry

    async def debit_wallet(
        self,
        user_id: str,
        amount: object,
        description: str,
        task_id: str | None = None,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """Remove funds from an existing wallet if the balance covers them."""
        debit_amount = to_amount(amount)

        async with self._db.transaction(tx) as tx:
            wallet = await tx.fetch_one("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
            if wallet is None:
                raise ServiceError(
                    "WALLET_NOT_FOUND",
                    "Wallet not found",
                    404,
                    {"user_id": user_id},
                )
            balance = Decimal(wallet["balance"])
            if balance < debit_amount:
                raise ServiceError(
                    "INSUFFICIENT_BALANCE",
                    "Insufficient balance",
                    402,
                    {"balance": str(balance), "requested": str(debit_amount)},
                )
            entry = await self._append_transaction(
                tx,
                user_id,
                TX_DEBIT,
                debit_amount,
                balance - debit_amount,
                description,
                task_id,
                None,
            )

        self._logger.info(
            "Wallet debited",
            extra={"user_id": user_id, "amount": str(debit_amount), "task_id": task_id},
        )
        return entry

    async def get_balance(self, user_id: str) -> Decimal:
        """Current balance, 0 when the wallet does not exist yet."""
        row = await self._db.fetch_one("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
        if row is None:
            return Decimal("0.00")
        return Decimal(row["balance"])

    async def get_wallet(self, user_id: str) -> dict[str, Any]:
        """Wallet with its transactions in the order they were applied."""
        row = await self._db.fetch_one(
            "SELECT user_id, balance, updated_at FROM wallets WHERE user_id = ?",
            (user_id,),
        )
        if row is None:
            raise ServiceError(
                "WALLET_NOT_FOUND",
                "Wallet not found",
                404,
                {"user_id": user_id},
            )
        transactions = await self._db.fetch_all(
            f"{_TX_SELECT_SQL} WHERE user_id = ? ORDER BY rowid",
            (user_id,),
        )
        return {
            "user_id": row["user_id"],
            "balance": Decimal(row["balance"]),
            "transactions": [_row_to_transaction(tx_row) for tx_row in transactions],
            "updated_at": row["updated_at"],
        }

    def watch_wallet(
        self,
        user_id: str,
        *,
        poll_interval: float,
    ) -> AsyncGenerator[dict[str, Any] | None, None]:
        """Live wallet view; yields None until the wallet exists."""

        async def _snapshot() -> dict[str, Any] | None:
            try:
                return await self.get_wallet(user_id)
            except ServiceError as exc:
                if exc.error != "WALLET_NOT_FOUND":
                    raise
                return None

        return watch(self._db, _snapshot, poll_interval)
