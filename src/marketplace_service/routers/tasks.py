"""Task posting, listing, lifecycle and completion photo endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import FileResponse
from sse_starlette.sse import EventSourceResponse
from starlette.datastructures import UploadFile as StarletteUploadFile

from marketplace_service.config import get_settings
from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.models import TASK_IN_PROGRESS
from marketplace_service.routers.validation import (
    optional_string,
    parse_json_body,
    require_caller,
    require_component,
)
from marketplace_service.services.subscriptions import sse_events

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks - post a task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> dict[str, Any]:
    """Post a new task owned by the caller."""
    caller = require_caller(request)
    data = parse_json_body(await request.body())

    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.create_task(caller, data)


# ---------------------------------------------------------------------------
# GET /tasks - list tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(
    owner_id: str | None = Query(None),
    city: str | None = Query(None),
    worker_id: str | None = Query(None),
    state: str = Query(TASK_IN_PROGRESS),
    lat: float | None = Query(None),
    lon: float | None = Query(None),
    radius_km: float | None = Query(None),
) -> dict[str, Any]:
    """
    List tasks.

    Filters, first match wins: ``owner_id`` (all of the owner's tasks),
    ``city`` (open tasks in the city), ``worker_id`` (tasks assigned to
    the worker in ``state``), ``lat``/``lon``/``radius_km`` (open tasks
    nearby). Without filters, every open task.
    """
    app_state = get_app_state()
    task_store = require_component(app_state.task_store, "TaskStore")

    if owner_id is not None:
        tasks = await task_store.list_by_owner(owner_id)
    elif city is not None:
        tasks = await task_store.list_by_city(city)
    elif worker_id is not None:
        tasks = await task_store.list_by_assigned_worker(worker_id, state)
    elif lat is not None or lon is not None or radius_km is not None:
        if lat is None or lon is None or radius_km is None:
            raise ServiceError(
                "INVALID_INPUT",
                "lat, lon and radius_km must be given together",
                400,
                {},
            )
        tasks = await task_store.list_nearby(lat, lon, radius_km)
    else:
        tasks = await task_store.list_open()
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# GET /tasks/stream - live task list (SSE)
# MUST be before GET /tasks/{task_id}
# ---------------------------------------------------------------------------


@router.get("/tasks/stream")
async def stream_tasks(
    owner_id: str | None = Query(None),
    city: str | None = Query(None),
    worker_id: str | None = Query(None),
    state: str = Query(TASK_IN_PROGRESS),
) -> EventSourceResponse:
    """Server-Sent Events stream of a task list, re-sent whenever it changes."""
    app_state = get_app_state()
    task_store = require_component(app_state.task_store, "TaskStore")
    settings = get_settings()
    snapshots = task_store.watch_tasks(
        poll_interval=settings.subscriptions.poll_interval_seconds,
        owner_id=owner_id,
        city=city,
        worker_id=worker_id,
        state=state,
    )
    return EventSourceResponse(
        sse_events(snapshots, "tasks"),
        ping=settings.subscriptions.keepalive_interval_seconds,
        headers={"X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# GET /tasks/{task_id} - task detail
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Fetch a single task."""
    state = get_app_state()
    task_store = require_component(state.task_store, "TaskStore")
    return await task_store.get_task(task_id)


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Cancel a task and release its locked escrow."""
    caller = require_caller(request)
    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.cancel_task(task_id, actor_id=caller)


@router.post("/tasks/{task_id}/arrive")
async def mark_arrived(task_id: str, request: Request) -> dict[str, Any]:
    """Assigned worker reports arrival at the task location."""
    caller = require_caller(request)
    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.mark_arrived(task_id, actor_id=caller)


@router.post("/tasks/{task_id}/request-completion")
async def request_completion(task_id: str, request: Request) -> dict[str, Any]:
    """Assigned worker asks the owner to approve completion."""
    caller = require_caller(request)
    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.request_completion(task_id, actor_id=caller)


@router.post("/tasks/{task_id}/approve")
async def approve_task(task_id: str, request: Request) -> dict[str, Any]:
    """Owner approves completion; the worker is paid and escrow released."""
    caller = require_caller(request)
    data = parse_json_body(await request.body())

    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.complete_and_release_payment(
        task_id,
        worker_id=optional_string(data, "worker_id"),
        amount=data.get("amount"),
        actor_id=caller,
    )


# ---------------------------------------------------------------------------
# Completion photos
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/photo")
async def upload_photo(task_id: str, request: Request) -> dict[str, Any]:
    """Upload a proof-of-completion photo (multipart/form-data, field ``file``)."""
    caller = require_caller(request)

    form = await request.form()
    upload_file = form.get("file")
    if upload_file is None:
        raise ServiceError(
            "NO_FILE",
            "No file part in the multipart request",
            400,
            {},
        )
    if not isinstance(upload_file, StarletteUploadFile):
        raise ServiceError(
            "NO_FILE",
            "The file part must be a file upload",
            400,
            {},
        )
    content = await upload_file.read()

    state = get_app_state()
    orchestrator = require_component(state.orchestrator, "LifecycleOrchestrator")
    return await orchestrator.upload_completion_photo(
        task_id,
        caller,
        upload_file.filename or "photo.jpg",
        content,
    )


@router.get("/photos/{task_id}/{filename}")
async def download_photo(task_id: str, filename: str) -> FileResponse:
    """Serve a stored completion photo."""
    state = get_app_state()
    photo_storage = require_component(state.photo_storage, "PhotoStorage")
    return FileResponse(photo_storage.resolve(task_id, filename))
