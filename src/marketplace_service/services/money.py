"""Money parsing and platform fee arithmetic."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from marketplace_service.core.exceptions import ServiceError

_PAISE = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    """Round to two decimal places."""
    return amount.quantize(_PAISE, rounding=ROUND_HALF_UP)


def to_amount(value: object, field_name: str = "amount") -> Decimal:
    """
    Parse a strictly positive money amount.

    Accepts ints, floats, numeric strings and Decimals. Booleans, NaN,
    infinities and non-positive values raise INVALID_INPUT.
    """
    if isinstance(value, bool) or not isinstance(value, int | float | str | Decimal):
        raise ServiceError(
            "INVALID_INPUT",
            f"{field_name} must be a number",
            400,
            {"field": field_name},
        )
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError(
            "INVALID_INPUT",
            f"{field_name} must be a number",
            400,
            {"field": field_name},
        ) from exc
    if not amount.is_finite() or amount <= 0:
        raise ServiceError(
            "INVALID_INPUT",
            f"{field_name} must be greater than zero",
            400,
            {"field": field_name},
        )
    return quantize(amount)


def calculate_platform_fee(amount: Decimal, flat_fee: Decimal) -> Decimal:
    """
    Platform fee charged on top of a task amount.

    The marketplace charges a flat fee per task, so the result depends
    only on ``flat_fee``. A negative amount is still rejected.
    """
    if amount < 0:
        raise ServiceError("INVALID_INPUT", "amount must not be negative", 400, {"field": "amount"})
    if flat_fee < 0:
        msg = "Platform fee must not be negative"
        raise ValueError(msg)
    return quantize(flat_fee)


def payment_breakdown(amount: Decimal, flat_fee: Decimal) -> dict[str, Any]:
    """Split a payment into bid amount, platform fee and total."""
    fee = calculate_platform_fee(amount, flat_fee)
    bid_amount = quantize(amount)
    return {
        "bid_amount": bid_amount,
        "platform_fee": fee,
        "total": bid_amount + fee,
    }
