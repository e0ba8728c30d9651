"""Pydantic response models for the API."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_state: dict[str, int]


class FeeBreakdownResponse(BaseModel):
    """Response model for GET /fees. Amounts serialize as decimal strings."""

    model_config = ConfigDict(extra="forbid")
    bid_amount: Decimal
    platform_fee: Decimal
    total: Decimal
