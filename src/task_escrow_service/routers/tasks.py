"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    optional_string,
    parse_json_body,
    query_int,
    require_amount,
    require_string,
    require_string_list,
)

if TYPE_CHECKING:
    from task_escrow_service.services.task_manager import TaskManager

router = APIRouter()

DEFAULT_LIST_LIMIT = 20


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a new task."""
    data = parse_json_body(await request.body())

    requester_id = require_string(data, "requester_id")
    title = require_string(data, "title")
    description = optional_string(data, "description") or ""
    budget = require_amount(data, "budget")
    deadline = optional_string(data, "deadline")
    required_capabilities = require_string_list(data, "required_capabilities")

    result = await _task_manager().create_task(
        requester_id=requester_id,
        title=title,
        description=description,
        budget=budget,
        deadline=deadline,
        required_capabilities=required_capabilities,
    )
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list open tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_open_tasks(request: Request) -> dict[str, Any]:
    """List posted tasks, newest first."""
    limit = query_int(request, "limit", DEFAULT_LIST_LIMIT)
    offset = query_int(request, "offset", 0)
    requester_id = request.query_params.get("requester_id")

    return await _task_manager().list_open_tasks(
        limit=limit,
        offset=offset,
        requester_id=requester_id,
    )


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get task details including bids."""
    return await _task_manager().get_task(task_id)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Cancel a posted or in-progress task."""
    data = parse_json_body(await request.body())
    requester_id = require_string(data, "requester_id")
    reason = optional_string(data, "reason")
    return await _task_manager().cancel_task(task_id, requester_id, reason)


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Mark a task completed by its assigned worker."""
    data = parse_json_body(await request.body())
    worker_id = require_string(data, "worker_id")
    delivery_reference = require_string(data, "delivery_reference")
    return await _task_manager().complete_task(task_id, worker_id, delivery_reference)


@router.post("/tasks/{task_id}/verify")
async def verify_task(task_id: str) -> dict[str, Any]:
    """Verify a completed task; schedules escrow release."""
    return await _task_manager().verify_task(task_id)
