"""Bid submission, listing, and acceptance endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    optional_int,
    optional_string,
    parse_json_body,
    require_amount,
    require_string,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/bids: place bid
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bids", status_code=201)
async def place_bid(task_id: str, request: Request) -> JSONResponse:
    """Place a bid on a posted task."""
    data = parse_json_body(await request.body())
    bidder_id = require_string(data, "bidder_id")
    amount = require_amount(data, "amount")
    estimated_duration_hours = optional_int(data, "estimated_duration_hours")
    message = optional_string(data, "message") or ""

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.place_bid(
        task_id=task_id,
        bidder_id=bidder_id,
        amount=amount,
        estimated_duration_hours=estimated_duration_hours,
        message=message,
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/bids")
async def list_bids(task_id: str) -> dict[str, Any]:
    """List bids for a task."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.list_bids(task_id)


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/bids/{bid_id}/accept: accept bid
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bids/{bid_id}/accept")
async def accept_bid(task_id: str, bid_id: str, request: Request) -> dict[str, Any]:
    """Accept a bid and assign the bidder as worker."""
    data = parse_json_body(await request.body())
    requester_id = require_string(data, "requester_id")

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.accept_bid(task_id, bid_id, requester_id)


@router.api_route(
    "/tasks/{task_id}/bids/{bid_id}/accept",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def accept_method_not_allowed(
    task_id: str,
    bid_id: str,
    request: Request,
) -> None:
    """Reject wrong methods on /tasks/{task_id}/bids/{bid_id}/accept."""
    _ = (task_id, bid_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
