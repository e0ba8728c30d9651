"""Review and worker rating endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import (
    parse_json_body,
    require_caller,
    require_component,
    require_field,
)

router = APIRouter()


@router.post("/tasks/{task_id}/review", status_code=201)
async def submit_review(task_id: str, request: Request) -> dict[str, Any]:
    """Owner reviews the worker of a completed task."""
    caller = require_caller(request)
    data = parse_json_body(await request.body())

    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.submit_review(
        task_id,
        caller,
        require_field(data, "star_rating"),
        data.get("text_review", ""),
        data.get("task_specific_rating"),
    )


@router.get("/workers/{worker_id}/reviews")
async def list_reviews(worker_id: str) -> dict[str, Any]:
    """Reviews of a worker, newest first."""
    state = get_app_state()
    review_store = require_component(state.review_store, "ReviewStore")
    return {"worker_id": worker_id, "reviews": await review_store.list_for_worker(worker_id)}


@router.get("/workers/{worker_id}/rating")
async def get_rating(worker_id: str) -> dict[str, Any]:
    """Aggregated rating of a worker."""
    state = get_app_state()
    review_store = require_component(state.review_store, "ReviewStore")
    return await review_store.worker_rating(worker_id)
