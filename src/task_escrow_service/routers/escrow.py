"""Escrow release endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    optional_amount,
    optional_bool,
    optional_int,
    optional_string,
    parse_json_body,
    require_string,
)
from task_escrow_service.schemas import EscrowConfigResponse

if TYPE_CHECKING:
    from task_escrow_service.services.escrow_scheduler import EscrowScheduler

router = APIRouter()


def _escrow_scheduler() -> EscrowScheduler:
    state = get_app_state()
    if state.escrow_scheduler is None:
        msg = "EscrowScheduler not initialized"
        raise RuntimeError(msg)
    return state.escrow_scheduler


# ---------------------------------------------------------------------------
# Static routes MUST be before /escrow/{task_id}
# ---------------------------------------------------------------------------


@router.get("/escrow/config", response_model=EscrowConfigResponse)
async def get_escrow_config() -> dict[str, Any]:
    """Current auto-release configuration."""
    return _escrow_scheduler().get_config()


@router.put("/escrow/config", response_model=EscrowConfigResponse)
async def update_escrow_config(request: Request) -> dict[str, Any]:
    """Change auto-release configuration; omitted fields are unchanged."""
    data = parse_json_body(await request.body())
    return _escrow_scheduler().update_config(
        enabled=optional_bool(data, "enabled"),
        delay_ms=optional_int(data, "delay_ms"),
        min_amount=optional_amount(data, "min_amount"),
        max_amount=optional_amount(data, "max_amount"),
    )


@router.post("/escrow/trigger-releases")
async def trigger_releases() -> dict[str, Any]:
    """Schedule an immediate release for every eligible verified task."""
    return await _escrow_scheduler().trigger_releases()


@router.get("/escrow/active")
async def list_active_escrows() -> dict[str, Any]:
    """Escrows still held."""
    return await _escrow_scheduler().list_active_escrows()


@router.get("/escrow/stats")
async def escrow_stats() -> dict[str, Any]:
    """Locked and released totals."""
    return await _escrow_scheduler().get_stats()


@router.get("/escrow/{task_id}")
async def get_escrow_status(task_id: str) -> dict[str, Any]:
    """Escrow status of one task."""
    return await _escrow_scheduler().get_escrow_status(task_id)


@router.post("/escrow/{task_id}/release")
async def manual_release(task_id: str, request: Request) -> dict[str, Any]:
    """Release a task's escrow immediately."""
    data = parse_json_body(await request.body())
    arbitrator_id = require_string(data, "arbitrator_id")
    reason = optional_string(data, "reason") or "manual release"
    return await _escrow_scheduler().manual_release(task_id, arbitrator_id, reason)
