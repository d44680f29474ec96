"""Application state management."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_escrow_service.clients.ledger_client import LedgerClient
    from task_escrow_service.clients.reputation_client import ReputationClient
    from task_escrow_service.events import EventBus
    from task_escrow_service.services.dispute_manager import DisputeManager
    from task_escrow_service.services.escrow_scheduler import EscrowScheduler
    from task_escrow_service.services.expiry_sweeper import ExpirySweeper
    from task_escrow_service.services.task_locks import TaskLocks
    from task_escrow_service.services.task_manager import TaskManager
    from task_escrow_service.services.webhook_dispatcher import WebhookDispatcher


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_bus: EventBus | None = None
    task_locks: TaskLocks | None = None
    task_manager: TaskManager | None = None
    dispute_manager: DisputeManager | None = None
    escrow_scheduler: EscrowScheduler | None = None
    webhook_dispatcher: WebhookDispatcher | None = None
    expiry_sweeper: ExpirySweeper | None = None
    ledger_client: LedgerClient | None = None
    reputation_client: ReputationClient | None = None
    background_tasks: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
