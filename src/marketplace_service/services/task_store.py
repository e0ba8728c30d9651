"""SQLite-backed task storage and the task state machine."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.models import (
    EQUIPMENT_PROVIDERS,
    TASK_CATEGORIES,
    TASK_COMPLETED,
    TASK_IN_PROGRESS,
    TASK_OPEN,
    TASK_STATES,
    can_transition,
)
from marketplace_service.services.geo import haversine_km
from marketplace_service.services.money import to_amount
from marketplace_service.services.subscriptions import watch

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_service.services.database import Database, Transaction

_MAX_TITLE_LENGTH = 100
_MAX_DESCRIPTION_LENGTH = 1000

_TASK_COLUMNS_SQL = (
    "task_id, owner_id, title, description, category, required_equipment, latitude, "
    "longitude, city, address, scheduled_date, scheduled_time, budget, accepted_bid_amount, "
    "is_instant_job, state, assigned_worker_id, completion_photo_url, worker_arrived, "
    "completion_requested, created_at, updated_at"
)
_TASK_SELECT_SQL = f"SELECT {_TASK_COLUMNS_SQL} FROM tasks"  # nosec B608
_TASK_INSERT_SQL = (
    f"INSERT INTO tasks ({_TASK_COLUMNS_SQL}) "  # nosec B608
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _today() -> date:
    return datetime.now(UTC).date()


def _invalid(message: str, field: str) -> ServiceError:
    return ServiceError("INVALID_INPUT", message, 400, {"field": field})


def _task_not_found(task_id: str) -> ServiceError:
    return ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})


def _row_to_task(row: dict[str, Any]) -> dict[str, Any]:
    accepted = row["accepted_bid_amount"]
    return {
        "task_id": row["task_id"],
        "owner_id": row["owner_id"],
        "title": row["title"],
        "description": row["description"],
        "category": row["category"],
        "required_equipment": json.loads(row["required_equipment"]),
        "location": {
            "latitude": row["latitude"],
            "longitude": row["longitude"],
            "city": row["city"],
            "address": row["address"],
        },
        "scheduled_date": row["scheduled_date"],
        "scheduled_time": row["scheduled_time"],
        "budget": Decimal(row["budget"]),
        "accepted_bid_amount": Decimal(accepted) if accepted is not None else None,
        "is_instant_job": bool(row["is_instant_job"]),
        "state": row["state"],
        "assigned_worker_id": row["assigned_worker_id"],
        "completion_photo_url": row["completion_photo_url"],
        "worker_arrived": bool(row["worker_arrived"]),
        "completion_requested": bool(row["completion_requested"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _require_text(details: dict[str, Any], field: str, max_length: int | None) -> str:
    value = details.get(field)
    if not isinstance(value, str) or not value.strip():
        raise _invalid(f"{field} must be a non-empty string", field)
    value = value.strip()
    if max_length is not None and len(value) > max_length:
        raise _invalid(f"{field} must be at most {max_length} characters", field)
    return value


def _coordinate(location: dict[str, Any], field: str, limit: float) -> float:
    value = location.get(field)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise _invalid(f"location.{field} must be a number", f"location.{field}")
    if not -limit <= value <= limit:
        raise _invalid(f"location.{field} is out of range", f"location.{field}")
    return float(value)


def _validate_equipment(raw: object) -> list[dict[str, str]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise _invalid("required_equipment must be a list", "required_equipment")
    equipment: list[dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            raise _invalid("equipment entries must be objects", "required_equipment")
        name = item.get("name")
        provided_by = item.get("provided_by")
        if not isinstance(name, str) or not name.strip():
            raise _invalid("equipment name must be a non-empty string", "required_equipment")
        if provided_by not in EQUIPMENT_PROVIDERS:
            raise _invalid(
                f"equipment provided_by must be one of {sorted(EQUIPMENT_PROVIDERS)}",
                "required_equipment",
            )
        equipment.append({"name": name.strip(), "provided_by": provided_by})
    return equipment


def _validate_details(details: dict[str, Any]) -> dict[str, Any]:
    """Validate task details and return normalised column values."""
    title = _require_text(details, "title", _MAX_TITLE_LENGTH)

    description = details.get("description", "")
    if not isinstance(description, str):
        raise _invalid("description must be a string", "description")
    if len(description) > _MAX_DESCRIPTION_LENGTH:
        raise _invalid(
            f"description must be at most {_MAX_DESCRIPTION_LENGTH} characters",
            "description",
        )

    category = details.get("category", "other")
    if category not in TASK_CATEGORIES:
        raise _invalid(f"category must be one of {sorted(TASK_CATEGORIES)}", "category")

    location = details.get("location")
    if not isinstance(location, dict):
        raise _invalid("location must be an object", "location")
    latitude = _coordinate(location, "latitude", 90.0)
    longitude = _coordinate(location, "longitude", 180.0)
    city = location.get("city")
    if not isinstance(city, str) or not city.strip():
        raise _invalid("location.city must be a non-empty string", "location.city")
    address = location.get("address")
    if address is not None and not isinstance(address, str):
        raise _invalid("location.address must be a string", "location.address")

    scheduled_raw = details.get("scheduled_date")
    if not isinstance(scheduled_raw, str):
        raise _invalid("scheduled_date must be an ISO date (YYYY-MM-DD)", "scheduled_date")
    try:
        scheduled_date = date.fromisoformat(scheduled_raw)
    except ValueError as exc:
        raise _invalid(
            "scheduled_date must be an ISO date (YYYY-MM-DD)",
            "scheduled_date",
        ) from exc
    if scheduled_date < _today():
        raise _invalid("scheduled_date must not be in the past", "scheduled_date")

    scheduled_time = details.get("scheduled_time", "")
    if not isinstance(scheduled_time, str):
        raise _invalid("scheduled_time must be a string", "scheduled_time")

    is_instant_job = details.get("is_instant_job", False)
    if not isinstance(is_instant_job, bool):
        raise _invalid("is_instant_job must be a boolean", "is_instant_job")

    return {
        "title": title,
        "description": description,
        "category": category,
        "required_equipment": _validate_equipment(details.get("required_equipment")),
        "latitude": latitude,
        "longitude": longitude,
        "city": city.strip(),
        "address": address,
        "scheduled_date": scheduled_date.isoformat(),
        "scheduled_time": scheduled_time,
        "budget": to_amount(details.get("budget"), "budget"),
        "is_instant_job": is_instant_job,
    }


class TaskStore:
    """
    Persistence for tasks and enforcement of the task state machine.

    Mutating operations accept an optional ``tx`` so the lifecycle
    orchestrator can compose several of them into one commit.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Creation and point reads
    # ------------------------------------------------------------------

    async def create_task(self, owner_id: str, details: dict[str, Any]) -> str:
        """Validate and persist a new open task, returning its id."""
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise _invalid("owner_id must be a non-empty string", "owner_id")
        values = _validate_details(details)

        task_id = f"t-{uuid.uuid4()}"
        now = _now_iso()
        await self._db.execute(
            _TASK_INSERT_SQL,
            (
                task_id,
                owner_id,
                values["title"],
                values["description"],
                values["category"],
                json.dumps(values["required_equipment"]),
                values["latitude"],
                values["longitude"],
                values["city"],
                values["address"],
                values["scheduled_date"],
                values["scheduled_time"],
                str(values["budget"]),
                None,
                int(values["is_instant_job"]),
                TASK_OPEN,
                None,
                None,
                0,
                0,
                now,
                now,
            ),
        )
        self._logger.info(
            "Task created",
            extra={"task_id": task_id, "owner_id": owner_id, "city": values["city"]},
        )
        return task_id

    async def get_task(self, task_id: str, *, tx: Transaction | None = None) -> dict[str, Any]:
        """Fetch a task by id, raising TASK_NOT_FOUND if absent."""
        sql = f"{_TASK_SELECT_SQL} WHERE task_id = ?"
        if tx is not None:
            row = await tx.fetch_one(sql, (task_id,))
        else:
            row = await self._db.fetch_one(sql, (task_id,))
        if row is None:
            raise _task_not_found(task_id)
        return _row_to_task(row)

    # ------------------------------------------------------------------
    # List queries
    # ------------------------------------------------------------------

    async def _list(self, where: str, params: tuple[Any, ...], order_by: str) -> list[dict[str, Any]]:
        rows = await self._db.fetch_all(
            f"{_TASK_SELECT_SQL} WHERE {where} ORDER BY {order_by} DESC, rowid DESC",  # nosec B608
            params,
        )
        return [_row_to_task(row) for row in rows]

    async def list_by_owner(self, owner_id: str) -> list[dict[str, Any]]:
        """Every task posted by ``owner_id``, newest first."""
        return await self._list("owner_id = ?", (owner_id,), "created_at")

    async def list_by_city(self, city: str) -> list[dict[str, Any]]:
        """Open tasks in ``city``, newest first."""
        return await self._list("city = ? AND state = ?", (city, TASK_OPEN), "created_at")

    async def list_open(self) -> list[dict[str, Any]]:
        """All open tasks, newest first."""
        return await self._list("state = ?", (TASK_OPEN,), "created_at")

    async def list_by_assigned_worker(
        self,
        worker_id: str,
        state: str = TASK_IN_PROGRESS,
    ) -> list[dict[str, Any]]:
        """Tasks assigned to ``worker_id`` in ``state``, most recently updated first."""
        if state not in TASK_STATES:
            raise _invalid(f"state must be one of {sorted(TASK_STATES)}", "state")
        return await self._list(
            "assigned_worker_id = ? AND state = ?",
            (worker_id, state),
            "updated_at",
        )

    async def list_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: float,
    ) -> list[dict[str, Any]]:
        """Open tasks within ``radius_km``, nearest first, each with ``distance_km``."""
        if radius_km <= 0:
            raise _invalid("radius_km must be greater than zero", "radius_km")
        nearby: list[dict[str, Any]] = []
        for task in await self.list_open():
            distance = haversine_km(
                latitude,
                longitude,
                task["location"]["latitude"],
                task["location"]["longitude"],
            )
            if distance <= radius_km:
                nearby.append({**task, "distance_km": round(distance, 3)})
        nearby.sort(key=lambda task: task["distance_km"])
        return nearby

    def watch_tasks(
        self,
        *,
        poll_interval: float,
        owner_id: str | None = None,
        city: str | None = None,
        worker_id: str | None = None,
        state: str = TASK_IN_PROGRESS,
    ) -> AsyncGenerator[list[dict[str, Any]], None]:
        """Live version of the list queries; closing the iterator ends the subscription."""
        if owner_id is not None:
            return watch(self._db, lambda: self.list_by_owner(owner_id), poll_interval)
        if city is not None:
            return watch(self._db, lambda: self.list_by_city(city), poll_interval)
        if worker_id is not None:
            return watch(
                self._db,
                lambda: self.list_by_assigned_worker(worker_id, state),
                poll_interval,
            )
        return watch(self._db, self.list_open, poll_interval)

    async def count_by_state(self) -> dict[str, int]:
        """Count tasks grouped by state."""
        rows = await self._db.fetch_all("SELECT state, COUNT(*) AS total FROM tasks GROUP BY state")
        return {str(row["state"]): int(row["total"]) for row in rows}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def transition_state(
        self,
        task_id: str,
        new_state: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """
        Move a task to ``new_state`` if the transition table allows it.

        The update is conditional on the state that was read, so a
        concurrent change surfaces as INVALID_TRANSITION.
        """
        async with self._db.transaction(tx) as tx:
            task = await self.get_task(task_id, tx=tx)
            current = task["state"]
            if not can_transition(current, new_state):
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Cannot move task from '{current}' to '{new_state}'",
                    409,
                    {"task_id": task_id, "from": current, "to": new_state},
                )
            # in_progress and completed require an assigned worker; use assign_worker
            needs_worker = new_state in (TASK_IN_PROGRESS, TASK_COMPLETED)
            if needs_worker and task["assigned_worker_id"] is None:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Cannot move task to '{new_state}' without an assigned worker; "
                    "accept a bid to assign one",
                    409,
                    {"task_id": task_id, "from": current, "to": new_state},
                )
            changed = await tx.execute(
                "UPDATE tasks SET state = ?, updated_at = ? WHERE task_id = ? AND state = ?",
                (new_state, _now_iso(), task_id, current),
            )
            if changed == 0:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    "Task state changed concurrently",
                    409,
                    {"task_id": task_id, "from": current, "to": new_state},
                )
            updated = await self.get_task(task_id, tx=tx)

        self._logger.info(
            "Task state changed",
            extra={"task_id": task_id, "from": current, "to": new_state},
        )
        return updated

    async def assign_worker(
        self,
        task_id: str,
        worker_id: str,
        accepted_amount: Decimal | None = None,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """
        Assign ``worker_id`` and move the task from open to in progress.

        Fails with TASK_NOT_OPEN when the task is no longer open at write
        time; this conditional update is what makes bid acceptance
        linearizable per task.
        """
        async with self._db.transaction(tx) as tx:
            await self.get_task(task_id, tx=tx)
            changed = await tx.execute(
                "UPDATE tasks SET state = ?, assigned_worker_id = ?, accepted_bid_amount = ?, "
                "updated_at = ? WHERE task_id = ? AND state = ?",
                (
                    TASK_IN_PROGRESS,
                    worker_id,
                    str(accepted_amount) if accepted_amount is not None else None,
                    _now_iso(),
                    task_id,
                    TASK_OPEN,
                ),
            )
            if changed == 0:
                raise ServiceError(
                    "TASK_NOT_OPEN",
                    "This task is no longer accepting bids",
                    409,
                    {"task_id": task_id},
                )
            return await self.get_task(task_id, tx=tx)

    async def _set_flag_in_progress(
        self,
        task_id: str,
        column: str,
        value: object,
        tx: Transaction | None,
    ) -> dict[str, Any]:
        async with self._db.transaction(tx) as tx:
            task = await self.get_task(task_id, tx=tx)
            if task["state"] != TASK_IN_PROGRESS:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Task must be '{TASK_IN_PROGRESS}', is '{task['state']}'",
                    409,
                    {"task_id": task_id, "from": task["state"]},
                )
            await tx.execute(
                f"UPDATE tasks SET {column} = ?, updated_at = ? "  # nosec B608
                "WHERE task_id = ? AND state = ?",
                (value, _now_iso(), task_id, TASK_IN_PROGRESS),
            )
            return await self.get_task(task_id, tx=tx)

    async def mark_arrived(self, task_id: str, *, tx: Transaction | None = None) -> dict[str, Any]:
        """Record that the assigned worker is on site."""
        return await self._set_flag_in_progress(task_id, "worker_arrived", 1, tx)

    async def request_completion(
        self,
        task_id: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """Record that the worker asked the owner to approve completion."""
        return await self._set_flag_in_progress(task_id, "completion_requested", 1, tx)

    async def set_completion_photo(
        self,
        task_id: str,
        url: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """Attach the proof-of-completion photo URL."""
        return await self._set_flag_in_progress(task_id, "completion_photo_url", url, tx)

    async def approve_completion(
        self,
        task_id: str,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        """Owner approval: in progress to completed."""
        return await self.transition_state(task_id, TASK_COMPLETED, tx=tx)
