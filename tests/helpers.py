"""Shared test helpers: task payloads and HTTP shortcuts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from httpx import AsyncClient, Response

OWNER_ID = "u-owner"
WORKER_ID = "u-worker"
OTHER_WORKER_ID = "u-worker-2"


def future_date(days: int = 3) -> str:
    """ISO date ``days`` from today (UTC)."""
    return (datetime.now(UTC).date() + timedelta(days=days)).isoformat()


def task_details(**overrides: Any) -> dict[str, Any]:
    """A valid task payload; keyword arguments replace top-level fields."""
    details: dict[str, Any] = {
        "title": "Fix leaking kitchen sink",
        "description": "The kitchen sink drips constantly and needs a new washer.",
        "category": "plumbing",
        "required_equipment": [
            {"name": "Wrench", "provided_by": "worker"},
            {"name": "Replacement washer", "provided_by": "user"},
        ],
        "location": {
            "latitude": 19.0760,
            "longitude": 72.8777,
            "city": "Mumbai",
            "address": "12 Marine Drive",
        },
        "scheduled_date": future_date(),
        "scheduled_time": "10:00",
        "budget": 500,
        "is_instant_job": False,
    }
    details.update(overrides)
    return details


def as_user(user_id: str) -> dict[str, str]:
    """Caller identity header."""
    return {"X-User-Id": user_id}


async def create_task(
    client: AsyncClient,
    owner_id: str = OWNER_ID,
    **overrides: Any,
) -> Response:
    """POST /tasks as ``owner_id``."""
    return await client.post("/tasks", json=task_details(**overrides), headers=as_user(owner_id))


async def place_bid(
    client: AsyncClient,
    task_id: str,
    worker_id: str = WORKER_ID,
    amount: Any = 450,
    message: str = "I can come tomorrow morning",
) -> Response:
    """POST /tasks/{task_id}/bids as ``worker_id``."""
    return await client.post(
        f"/tasks/{task_id}/bids",
        json={"amount": amount, "message": message},
        headers=as_user(worker_id),
    )


async def accept_bid(
    client: AsyncClient,
    bid_id: str,
    owner_id: str = OWNER_ID,
    *,
    pay: bool = False,
) -> Response:
    """POST /bids/{bid_id}/accept (or accept-and-pay) as ``owner_id``."""
    action = "accept-and-pay" if pay else "accept"
    return await client.post(f"/bids/{bid_id}/{action}", headers=as_user(owner_id))


async def create_assigned_task(
    client: AsyncClient,
    *,
    pay: bool = False,
    amount: Any = 450,
) -> tuple[str, str]:
    """Create a task, bid on it as WORKER_ID and accept; returns (task_id, bid_id)."""
    task_resp = await create_task(client)
    assert task_resp.status_code == 201
    task_id = task_resp.json()["task_id"]

    bid_resp = await place_bid(client, task_id, amount=amount)
    assert bid_resp.status_code == 201
    bid_id = bid_resp.json()["bid_id"]

    accept_resp = await accept_bid(client, bid_id, pay=pay)
    assert accept_resp.status_code == 200
    return task_id, bid_id
