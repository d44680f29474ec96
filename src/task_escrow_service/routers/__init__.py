"""API routers."""

from task_escrow_service.routers import bids, disputes, escrow, health, tasks, webhooks

__all__ = ["bids", "disputes", "escrow", "health", "tasks", "webhooks"]
