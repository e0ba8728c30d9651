"""Shared request helpers for marketplace routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from marketplace_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from fastapi import Request

T = TypeVar("T")

CALLER_HEADER = "X-User-Id"


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def require_caller(request: Request) -> str:
    """
    Opaque id of the calling user.

    Identity is established upstream; this service only reads the
    forwarded user id header.
    """
    caller = request.headers.get(CALLER_HEADER, "").strip()
    if not caller:
        raise ServiceError(
            "UNAUTHORIZED",
            f"Missing {CALLER_HEADER} header",
            401,
            {},
        )
    return caller


def require_field(data: dict[str, Any], field_name: str) -> Any:
    """Return a field that must be present and not null."""
    value = data.get(field_name)
    if value is None:
        raise ServiceError(
            "INVALID_INPUT",
            f"Missing required field: {field_name}",
            400,
            {"field": field_name},
        )
    return value


def require_string(data: dict[str, Any], field_name: str) -> str:
    """Return a non-empty string field."""
    value = require_field(data, field_name)
    if not isinstance(value, str) or not value.strip():
        raise ServiceError(
            "INVALID_INPUT",
            f"Field '{field_name}' must be a non-empty string",
            400,
            {"field": field_name},
        )
    return value


def optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Return a string field or None when absent."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_INPUT",
            f"Field '{field_name}' must be a string",
            400,
            {"field": field_name},
        )
    return value


def require_component(component: T | None, name: str) -> T:
    """Return an AppState component, failing loudly if startup did not create it."""
    if component is None:
        msg = f"{name} not initialized"
        raise RuntimeError(msg)
    return component
