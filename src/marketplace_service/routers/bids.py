"""Bid placement, listing, and acceptance endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from marketplace_service.config import get_settings
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import (
    parse_json_body,
    require_caller,
    require_component,
    require_field,
    require_string,
)
from marketplace_service.services.subscriptions import sse_events

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/bids - place bid
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bids", status_code=201)
async def place_bid(task_id: str, request: Request) -> dict[str, Any]:
    """Place a bid on an open task as the calling worker."""
    caller = require_caller(request)
    data = parse_json_body(await request.body())
    amount = require_field(data, "amount")
    message = require_string(data, "message")

    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.place_bid(task_id, caller, amount, message)


# ---------------------------------------------------------------------------
# GET /tasks/{task_id}/bids - list bids for a task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/bids")
async def list_task_bids(task_id: str) -> dict[str, Any]:
    """Every bid on a task, newest first."""
    state = get_app_state()
    task_store = require_component(state.task_store, "TaskStore")
    bid_store = require_component(state.bid_store, "BidStore")
    await task_store.get_task(task_id)
    return {"task_id": task_id, "bids": await bid_store.list_bids_for_task(task_id)}


@router.get("/tasks/{task_id}/bids/stream")
async def stream_task_bids(task_id: str) -> EventSourceResponse:
    """Server-Sent Events stream of a task's bids."""
    state = get_app_state()
    task_store = require_component(state.task_store, "TaskStore")
    bid_store = require_component(state.bid_store, "BidStore")
    await task_store.get_task(task_id)
    settings = get_settings()
    return EventSourceResponse(
        sse_events(
            bid_store.watch_bids(
                poll_interval=settings.subscriptions.poll_interval_seconds,
                task_id=task_id,
            ),
            "bids",
        ),
        ping=settings.subscriptions.keepalive_interval_seconds,
        headers={"X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# GET /workers/{worker_id}/bids - bids placed by a worker
# ---------------------------------------------------------------------------


@router.get("/workers/{worker_id}/bids")
async def list_worker_bids(worker_id: str) -> dict[str, Any]:
    """Every bid a worker placed, newest first."""
    state = get_app_state()
    bid_store = require_component(state.bid_store, "BidStore")
    return {"worker_id": worker_id, "bids": await bid_store.list_bids_for_worker(worker_id)}


# ---------------------------------------------------------------------------
# POST /bids/{bid_id}/accept - accept bid
# ---------------------------------------------------------------------------


@router.post("/bids/{bid_id}/accept")
async def accept_bid(bid_id: str, request: Request) -> dict[str, Any]:
    """Accept a bid: assign the worker and reject the other pending bids."""
    caller = require_caller(request)
    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.accept_bid(bid_id, actor_id=caller)


@router.post("/bids/{bid_id}/accept-and-pay")
async def accept_and_pay(bid_id: str, request: Request) -> dict[str, Any]:
    """Accept a bid and lock its amount plus the platform fee in escrow."""
    caller = require_caller(request)
    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.accept_and_pay(bid_id, actor_id=caller)
