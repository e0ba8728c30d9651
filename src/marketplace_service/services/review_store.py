"""Worker reviews and derived ratings."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.models import TASK_COMPLETED

if TYPE_CHECKING:
    from marketplace_service.services.database import Database
    from marketplace_service.services.task_store import TaskStore

_MAX_REVIEW_LENGTH = 1000
_RECENT_REVIEWS = 5

_REVIEW_SELECT_SQL = (
    "SELECT review_id, task_id, worker_id, reviewer_id, category, star_rating, text_review, "
    "task_specific_rating, timestamp FROM reviews"
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_star_rating(value: object) -> bool:
    """Check if value is an integer 1-5 (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 5


def _row_to_review(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "review_id": row["review_id"],
        "task_id": row["task_id"],
        "worker_id": row["worker_id"],
        "reviewer_id": row["reviewer_id"],
        "category": row["category"],
        "star_rating": row["star_rating"],
        "text_review": row["text_review"],
        "task_specific_rating": json.loads(row["task_specific_rating"]),
        "timestamp": row["timestamp"],
    }


class ReviewStore:
    """Reviews left by task owners for the workers who completed their tasks."""

    def __init__(self, db: Database, tasks: TaskStore) -> None:
        self._db = db
        self._tasks = tasks
        self._logger = get_logger(__name__)

    async def submit_review(
        self,
        task_id: str,
        reviewer_id: str,
        star_rating: object,
        text_review: object = "",
        task_specific_rating: object = None,
    ) -> dict[str, Any]:
        """
        Record the owner's review of a completed task.

        Error precedence:
        1. INVALID_INPUT       rating outside 1-5, malformed text or aspects
        2. TASK_NOT_FOUND
        3. INVALID_TRANSITION  task not completed
        4. FORBIDDEN           reviewer is not the task owner
        5. DUPLICATE_REVIEW    task already reviewed
        """
        if not _is_star_rating(star_rating):
            raise ServiceError(
                "INVALID_INPUT",
                "star_rating must be an integer between 1 and 5",
                400,
                {"field": "star_rating"},
            )
        if not isinstance(text_review, str) or len(text_review) > _MAX_REVIEW_LENGTH:
            raise ServiceError(
                "INVALID_INPUT",
                f"text_review must be a string of at most {_MAX_REVIEW_LENGTH} characters",
                400,
                {"field": "text_review"},
            )
        aspects = task_specific_rating if task_specific_rating is not None else {}
        if not isinstance(aspects, dict) or not all(
            isinstance(name, str) and _is_star_rating(value) for name, value in aspects.items()
        ):
            raise ServiceError(
                "INVALID_INPUT",
                "task_specific_rating must map aspect names to ratings between 1 and 5",
                400,
                {"field": "task_specific_rating"},
            )

        review_id = f"rev-{uuid.uuid4()}"
        now = _now_iso()
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            if task["state"] != TASK_COMPLETED:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    "Only completed tasks can be reviewed",
                    409,
                    {"task_id": task_id, "state": task["state"]},
                )
            if task["owner_id"] != reviewer_id:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the task owner can review this task",
                    403,
                    {"task_id": task_id},
                )
            try:
                await tx.execute(
                    "INSERT INTO reviews (review_id, task_id, worker_id, reviewer_id, category, "
                    "star_rating, text_review, task_specific_rating, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        review_id,
                        task_id,
                        task["assigned_worker_id"],
                        reviewer_id,
                        task["category"],
                        star_rating,
                        text_review,
                        json.dumps(aspects),
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ServiceError(
                    "DUPLICATE_REVIEW",
                    "This task has already been reviewed",
                    409,
                    {"task_id": task_id},
                ) from exc

        self._logger.info(
            "Review submitted",
            extra={"task_id": task_id, "worker_id": task["assigned_worker_id"]},
        )
        return {
            "review_id": review_id,
            "task_id": task_id,
            "worker_id": task["assigned_worker_id"],
            "reviewer_id": reviewer_id,
            "category": task["category"],
            "star_rating": star_rating,
            "text_review": text_review,
            "task_specific_rating": aspects,
            "timestamp": now,
        }

    async def list_for_worker(self, worker_id: str) -> list[dict[str, Any]]:
        """Reviews of a worker, newest first."""
        rows = await self._db.fetch_all(
            f"{_REVIEW_SELECT_SQL} WHERE worker_id = ? ORDER BY timestamp DESC, rowid DESC",
            (worker_id,),
        )
        return [_row_to_review(row) for row in rows]

    async def worker_rating(self, worker_id: str) -> dict[str, Any]:
        """Overall and per-category averages plus the most recent reviews."""
        reviews = await self.list_for_worker(worker_id)
        if not reviews:
            return {
                "worker_id": worker_id,
                "overall_rating": 0.0,
                "total_reviews": 0,
                "task_type_ratings": {},
                "recent_reviews": [],
            }

        by_category: dict[str, list[int]] = {}
        for review in reviews:
            by_category.setdefault(review["category"], []).append(review["star_rating"])

        total = sum(review["star_rating"] for review in reviews)
        return {
            "worker_id": worker_id,
            "overall_rating": round(total / len(reviews), 2),
            "total_reviews": len(reviews),
            "task_type_ratings": {
                category: round(sum(stars) / len(stars), 2)
                for category, stars in sorted(by_category.items())
            },
            "recent_reviews": reviews[:_RECENT_REVIEWS],
        }
