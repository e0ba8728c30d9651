"""Notification outbox: lifecycle events recorded for external delivery."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.services.subscriptions import watch

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_service.services.database import Database

_NOTIFICATION_SELECT_SQL = (
    "SELECT notification_id, user_id, kind, related_task_id, title, message, is_read, "
    "created_at FROM notifications"
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _row_to_notification(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "notification_id": row["notification_id"],
        "user_id": row["user_id"],
        "kind": row["kind"],
        "related_task_id": row["related_task_id"],
        "title": row["title"],
        "message": row["message"],
        "is_read": bool(row["is_read"]),
        "created_at": row["created_at"],
    }


class Notifier:
    """
    Appends notification events to an outbox table.

    Emission is best effort: it runs after the lifecycle write has
    committed, and a failure is logged without undoing that write.
    Delivery (push, e-mail) is left to consumers of the outbox.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = get_logger(__name__)

    async def emit(
        self,
        user_id: str,
        kind: str,
        related_task_id: str | None,
        title: str,
        message: str,
    ) -> bool:
        """Record one event. Returns False if it could not be stored."""
        try:
            await self._db.execute(
                "INSERT INTO notifications (user_id, kind, related_task_id, title, message, "
                "is_read, created_at) VALUES (?, ?, ?, ?, ?, 0, ?)",
                (user_id, kind, related_task_id, title, message, _now_iso()),
            )
        except (ServiceError, sqlite3.Error) as exc:
            self._logger.warning(
                "Notification could not be recorded",
                extra={
                    "user_id": user_id,
                    "kind": kind,
                    "task_id": related_task_id,
                    "error": str(exc),
                },
            )
            return False
        return True

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[dict[str, Any]]:
        """Notifications for a user, newest first."""
        sql = f"{_NOTIFICATION_SELECT_SQL} WHERE user_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY notification_id DESC"
        rows = await self._db.fetch_all(sql, (user_id,))
        return [_row_to_notification(row) for row in rows]

    async def mark_read(self, notification_id: int, user_id: str) -> dict[str, Any]:
        """Mark one of the user's notifications as read."""
        async with self._db.transaction() as tx:
            row = await tx.fetch_one(
                f"{_NOTIFICATION_SELECT_SQL} WHERE notification_id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            if row is None:
                raise ServiceError(
                    "NOTIFICATION_NOT_FOUND",
                    "Notification not found",
                    404,
                    {"notification_id": notification_id},
                )
            await tx.execute(
                "UPDATE notifications SET is_read = 1 WHERE notification_id = ?",
                (notification_id,),
            )
        return {**_row_to_notification(row), "is_read": True}

    def watch(
        self,
        user_id: str,
        *,
        poll_interval: float,
    ) -> AsyncGenerator[list[dict[str, Any]], None]:
        """Live notification list for a user."""
        return watch(self._db, lambda: self.list_for_user(user_id), poll_interval)
