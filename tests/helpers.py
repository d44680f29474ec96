"""Shared test helpers: config files and store row builders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any


def write_config(
    tmp_path: Any,
    *,
    db_path: str,
    escrow_enabled: bool = True,
    delay_ms: int = 0,
    min_reputation: float = 0,
) -> str:
    """Write a complete config.yaml under tmp_path and return its path."""
    log_dir = tmp_path / "logs"
    enabled = "true" if escrow_enabled else "false"
    config_content = f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
request:
  max_body_size: 1048576
escrow:
  enabled: {enabled}
  delay_ms: {delay_ms}
  min_amount: "0.1"
  max_amount: "10000"
  poll_interval_seconds: 3600
sweeper:
  interval_seconds: 3600
  stale_after_seconds: 604800
  retention_seconds: 2592000
  retention_interval_seconds: 86400
webhooks:
  workers: 2
  max_attempts: 2
  backoff_base_seconds: 0
  timeout_seconds: 5
  failure_threshold: 3
bidding:
  min_reputation: {min_reputation}
ledger:
  enabled: false
  base_url: "http://localhost:8002"
  create_path: "/escrow/entries"
  release_path: "/escrow/entries/{{reference}}/release"
  timeout_seconds: 10
reputation:
  base_url: "http://localhost:8004"
  score_path: "/agents/{{agent_id}}/score"
  timeout_seconds: 10
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return str(config_path)


def iso(value: datetime) -> str:
    """Format a datetime the way the stores do."""
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def future_deadline(hours: int = 24) -> str:
    """An ISO deadline hours from now."""
    return iso(datetime.now(UTC) + timedelta(hours=hours))


def task_row(
    task_id: str,
    status: str = "posted",
    *,
    requester_id: str = "a-requester",
    worker_id: str | None = None,
    budget: str = "100",
    deadline: str | None = None,
    created_at: str | None = None,
    bid_count: int = 0,
    accepted_bid_id: str | None = None,
) -> dict[str, Any]:
    """A complete task row for TaskStore.insert_task."""
    return {
        "task_id": task_id,
        "requester_id": requester_id,
        "title": f"Task {task_id}",
        "description": "Description",
        "budget": Decimal(budget),
        "deadline": deadline,
        "required_capabilities": ["python"],
        "status": status,
        "bid_count": bid_count,
        "worker_id": worker_id,
        "accepted_bid_id": accepted_bid_id,
        "delivery_reference": None,
        "payment_released": False,
        "payment_reference": None,
        "dispute_id": None,
        "escrow_reference": None,
        "ledger_status": None,
        "cancel_reason": None,
        "created_at": created_at if created_at is not None else iso(datetime.now(UTC)),
        "assigned_at": None,
        "completed_at": None,
        "verified_at": None,
        "paid_at": None,
        "cancelled_at": None,
        "expired_at": None,
    }


def bid_row(
    bid_id: str,
    task_id: str,
    bidder_id: str = "a-worker",
    amount: str = "80",
) -> dict[str, Any]:
    """A complete bid row for TaskStore.insert_bid."""
    return {
        "bid_id": bid_id,
        "task_id": task_id,
        "bidder_id": bidder_id,
        "amount": Decimal(amount),
        "estimated_duration_hours": 4,
        "message": "",
        "created_at": iso(datetime.now(UTC)),
    }
