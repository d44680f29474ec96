"""Dispute endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    optional_string,
    parse_json_body,
    require_string,
)

if TYPE_CHECKING:
    from task_escrow_service.services.dispute_manager import DisputeManager

router = APIRouter()


def _dispute_manager() -> DisputeManager:
    state = get_app_state()
    if state.dispute_manager is None:
        msg = "DisputeManager not initialized"
        raise RuntimeError(msg)
    return state.dispute_manager


@router.post("/disputes", status_code=201)
async def open_dispute(request: Request) -> JSONResponse:
    """Open a dispute on a task."""
    data = parse_json_body(await request.body())
    task_id = require_string(data, "task_id")
    initiator_id = require_string(data, "initiator_id")
    respondent_id = require_string(data, "respondent_id")
    reason = require_string(data, "reason")

    result = await _dispute_manager().open_dispute(
        task_id=task_id,
        initiator_id=initiator_id,
        respondent_id=respondent_id,
        reason=reason,
    )
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# Static routes MUST be before GET /disputes/{dispute_id}
# ---------------------------------------------------------------------------


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List disputes with optional status, task and initiator filters."""
    return await _dispute_manager().list_disputes(
        status=request.query_params.get("status"),
        task_id=request.query_params.get("task_id"),
        initiator_id=request.query_params.get("initiator_id"),
    )


@router.get("/disputes/stats")
async def dispute_stats() -> dict[str, Any]:
    """Dispute counts and average resolution time."""
    return await _dispute_manager().get_stats()


@router.get("/disputes/agents/{agent_id}")
async def agent_disputes(agent_id: str) -> dict[str, Any]:
    """Disputes an agent is party to."""
    return await _dispute_manager().list_agent_disputes(agent_id)


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str) -> dict[str, Any]:
    """Get a dispute with its evidence."""
    return await _dispute_manager().get_dispute(dispute_id)


@router.post("/disputes/{dispute_id}/evidence", status_code=201)
async def submit_evidence(dispute_id: str, request: Request) -> JSONResponse:
    """Submit evidence to an unresolved dispute."""
    data = parse_json_body(await request.body())
    party_id = require_string(data, "party_id")
    kind = require_string(data, "kind")
    content = require_string(data, "content")

    result = await _dispute_manager().submit_evidence(dispute_id, party_id, kind, content)
    return JSONResponse(status_code=201, content=result)


@router.post("/disputes/{dispute_id}/review")
async def review_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Put an open dispute under review."""
    data = parse_json_body(await request.body())
    arbitrator_id = require_string(data, "arbitrator_id")
    return await _dispute_manager().review_dispute(dispute_id, arbitrator_id)


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Resolve a dispute with an arbitration outcome."""
    data = parse_json_body(await request.body())
    arbitrator_id = require_string(data, "arbitrator_id")
    outcome = require_string(data, "outcome")
    reason = optional_string(data, "reason")
    return await _dispute_manager().resolve_dispute(dispute_id, arbitrator_id, outcome, reason)
