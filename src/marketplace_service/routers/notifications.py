"""Notification outbox endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from marketplace_service.config import get_settings
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import require_caller, require_component
from marketplace_service.services.subscriptions import sse_events

router = APIRouter()


@router.get("/notifications")
async def list_notifications(
    request: Request,
    unread_only: bool = Query(False),
) -> dict[str, Any]:
    """The caller's notifications, newest first."""
    caller = require_caller(request)
    state = get_app_state()
    notifier = require_component(state.notifier, "Notifier")
    return {"notifications": await notifier.list_for_user(caller, unread_only)}


@router.get("/notifications/stream")
async def stream_notifications(request: Request) -> EventSourceResponse:
    """Server-Sent Events stream of the caller's notifications."""
    caller = require_caller(request)
    state = get_app_state()
    notifier = require_component(state.notifier, "Notifier")
    settings = get_settings()
    return EventSourceResponse(
        sse_events(
            notifier.watch(caller, poll_interval=settings.subscriptions.poll_interval_seconds),
            "notifications",
        ),
        ping=settings.subscriptions.keepalive_interval_seconds,
        headers={"X-Accel-Buffering": "no"},
    )


@router.post("/notifications/{notification_id}/read")
async def mark_read(notification_id: int, request: Request) -> dict[str, Any]:
    """Mark one of the caller's notifications as read."""
    caller = require_caller(request)
    state = get_app_state()
    notifier = require_component(state.notifier, "Notifier")
    return await notifier.mark_read(notification_id, caller)
