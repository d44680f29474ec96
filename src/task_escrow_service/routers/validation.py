"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from fastapi import Request


def _invalid(message: str) -> ServiceError:
    return ServiceError("VALIDATION_ERROR", message, 400, {})


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


def require_string(data: dict[str, Any], field_name: str) -> str:
    """Extract a required, non-empty string field."""
    if field_name not in data:
        raise _invalid(f"Missing required field: {field_name}")

    value = data[field_name]

    if value is None:
        raise _invalid(f"Field '{field_name}' must not be null")

    if not isinstance(value, str):
        raise _invalid(f"Field '{field_name}' must be a string")

    if not value:
        raise _invalid(f"Field '{field_name}' must not be empty")

    return value


def optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; absent and null both give None."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _invalid(f"Field '{field_name}' must be a string")
    return value


def _to_decimal(value: object, field_name: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise _invalid(f"Field '{field_name}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise _invalid(f"Field '{field_name}' must be a number") from exc
    if not amount.is_finite():
        raise _invalid(f"Field '{field_name}' must be a finite number")
    return amount


def require_amount(data: dict[str, Any], field_name: str) -> Decimal:
    """Extract a required decimal amount given as a JSON number or numeric string."""
    if field_name not in data or data[field_name] is None:
        raise _invalid(f"Missing required field: {field_name}")
    return _to_decimal(data[field_name], field_name)


def optional_amount(data: dict[str, Any], field_name: str) -> Decimal | None:
    """Extract an optional decimal amount."""
    value = data.get(field_name)
    if value is None:
        return None
    return _to_decimal(value, field_name)


def optional_int(data: dict[str, Any], field_name: str) -> int | None:
    """Extract an optional integer field (booleans are rejected)."""
    value = data.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise _invalid(f"Field '{field_name}' must be an integer")
    return value


def require_bool(data: dict[str, Any], field_name: str) -> bool:
    """Extract a required boolean field."""
    value = data.get(field_name)
    if not isinstance(value, bool):
        raise _invalid(f"Field '{field_name}' must be a boolean")
    return value


def optional_bool(data: dict[str, Any], field_name: str) -> bool | None:
    """Extract an optional boolean field."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise _invalid(f"Field '{field_name}' must be a boolean")
    return value


def require_string_list(data: dict[str, Any], field_name: str) -> list[str]:
    """Extract a required list of strings."""
    value = data.get(field_name)
    if not isinstance(value, list):
        raise _invalid(f"Field '{field_name}' must be a list of strings")
    if any(not isinstance(item, str) for item in value):
        raise _invalid(f"Field '{field_name}' must be a list of strings")
    return list(value)


def query_int(request: Request, name: str, default: int) -> int:
    """Read an integer query parameter."""
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise _invalid(f"{name} must be an integer") from exc


def require_query(request: Request, name: str) -> str:
    """Read a required, non-empty query parameter."""
    value = request.query_params.get(name)
    if not value:
        raise _invalid(f"Missing required query parameter: {name}")
    return value
