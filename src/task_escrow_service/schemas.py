"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    active_task_locks: int
    auto_release_enabled: bool
    queued_webhook_deliveries: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class EscrowConfigResponse(BaseModel):
    """Response model for GET/PUT /escrow/config."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    delay_ms: int
    min_amount: str
    max_amount: str


class WebhookResponse(BaseModel):
    """Public view of a webhook subscription (no secret)."""

    model_config = ConfigDict(extra="forbid")
    webhook_id: str
    owner_id: str
    url: str
    events: list[str]
    active: bool
    consecutive_failures: int
    last_delivered_at: str | None
    created_at: str


class WebhookRegisteredResponse(WebhookResponse):
    """Response model for POST /webhooks. The only response carrying the secret."""

    secret: str


class WebhookListResponse(BaseModel):
    """Response model for GET /webhooks."""

    model_config = ConfigDict(extra="forbid")
    webhooks: list[WebhookResponse]


class WebhookTestResponse(BaseModel):
    """Response model for POST /webhooks/{webhook_id}/test."""

    model_config = ConfigDict(extra="forbid")
    webhook_id: str
    delivery_id: str
    success: bool
    status_code: int | None
    error: str | None
