"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness plus task counts and the state of the background machinery."""
    state = get_app_state()
    stats = (
        state.task_manager.get_stats()
        if state.task_manager is not None
        else {"total_tasks": 0, "tasks_by_status": {}}
    )
    escrow = state.escrow_scheduler.get_config() if state.escrow_scheduler is not None else None
    dispatcher = state.webhook_dispatcher
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=stats["total_tasks"],
        tasks_by_status=stats["tasks_by_status"],
        active_task_locks=len(state.task_locks) if state.task_locks is not None else 0,
        auto_release_enabled=bool(escrow["enabled"]) if escrow is not None else False,
        queued_webhook_deliveries=dispatcher.queued if dispatcher is not None else 0,
    )
