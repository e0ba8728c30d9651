"""Wallet, escrow and fee endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from marketplace_service.config import get_settings
from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import (
    optional_string,
    parse_json_body,
    require_caller,
    require_component,
    require_field,
    require_string,
)
from marketplace_service.schemas import FeeBreakdownResponse
from marketplace_service.services.money import payment_breakdown, to_amount
from marketplace_service.services.subscriptions import sse_events

router = APIRouter()


def _require_self(caller: str, user_id: str) -> None:
    if caller != user_id:
        raise ServiceError(
            "FORBIDDEN",
            "Wallets can only be accessed by their owner",
            403,
            {"user_id": user_id},
        )


# ---------------------------------------------------------------------------
# GET /fees - payment breakdown
# ---------------------------------------------------------------------------


@router.get("/fees", response_model=FeeBreakdownResponse)
async def get_fees(amount: str = Query(...)) -> FeeBreakdownResponse:
    """Bid amount, platform fee and total for a prospective payment."""
    settings = get_settings()
    breakdown = payment_breakdown(to_amount(amount), settings.payments.platform_fee)
    return FeeBreakdownResponse(**breakdown)


# ---------------------------------------------------------------------------
# GET /escrow/{task_id} - escrow record
# ---------------------------------------------------------------------------


@router.get("/escrow/{task_id}")
async def get_escrow(task_id: str) -> dict[str, Any]:
    """Escrow record for a task."""
    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    return await ledger.get_escrow(task_id)


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


@router.get("/wallets/{user_id}")
async def get_wallet(user_id: str, request: Request) -> dict[str, Any]:
    """Wallet balance and transaction history."""
    _require_self(require_caller(request), user_id)
    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    return await ledger.get_wallet(user_id)


@router.get("/wallets/{user_id}/balance")
async def get_balance(user_id: str, request: Request) -> dict[str, Any]:
    """Current balance; 0 for a wallet that was never created."""
    _require_self(require_caller(request), user_id)
    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    return {"user_id": user_id, "balance": await ledger.get_balance(user_id)}


@router.get("/wallets/{user_id}/stream")
async def stream_wallet(user_id: str, request: Request) -> EventSourceResponse:
    """Server-Sent Events stream of a wallet."""
    _require_self(require_caller(request), user_id)
    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    settings = get_settings()
    return EventSourceResponse(
        sse_events(
            ledger.watch_wallet(
                user_id,
                poll_interval=settings.subscriptions.poll_interval_seconds,
            ),
            "wallet",
        ),
        ping=settings.subscriptions.keepalive_interval_seconds,
        headers={"X-Accel-Buffering": "no"},
    )


@router.post("/wallets/{user_id}/credit", status_code=201)
async def credit_wallet(user_id: str, request: Request) -> dict[str, Any]:
    """Add funds to the caller's wallet."""
    _require_self(require_caller(request), user_id)
    data = parse_json_body(await request.body())
    amount = require_field(data, "amount")
    description = require_string(data, "description")

    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    return await ledger.credit_wallet(
        user_id,
        amount,
        description,
        task_id=optional_string(data, "task_id"),
        reference=optional_string(data, "reference"),
    )


@router.post("/wallets/{user_id}/debit", status_code=201)
async def debit_wallet(user_id: str, request: Request) -> dict[str, Any]:
    """Withdraw funds from the caller's wallet."""
    _require_self(require_caller(request), user_id)
    data = parse_json_body(await request.body())
    amount = require_field(data, "amount")
    description = require_string(data, "description")

    state = get_app_state()
    ledger = require_component(state.ledger, "Ledger")
    return await ledger.debit_wallet(
        user_id,
        amount,
        description,
        task_id=optional_string(data, "task_id"),
    )
