"""Service layer components."""

from task_escrow_service.services.dispute_manager import DisputeManager
from task_escrow_service.services.escrow_scheduler import EscrowScheduler
from task_escrow_service.services.expiry_sweeper import ExpirySweeper
from task_escrow_service.services.task_locks import TaskLocks
from task_escrow_service.services.task_manager import TaskManager
from task_escrow_service.services.webhook_dispatcher import WebhookDispatcher

__all__ = [
    "DisputeManager",
    "EscrowScheduler",
    "ExpirySweeper",
    "TaskLocks",
    "TaskManager",
    "WebhookDispatcher",
]
