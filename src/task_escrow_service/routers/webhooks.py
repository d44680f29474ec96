"""Webhook subscription endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    parse_json_body,
    require_bool,
    require_query,
    require_string,
    require_string_list,
)
from task_escrow_service.schemas import (
    WebhookListResponse,
    WebhookRegisteredResponse,
    WebhookResponse,
    WebhookTestResponse,
)

if TYPE_CHECKING:
    from task_escrow_service.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


def _dispatcher() -> WebhookDispatcher:
    state = get_app_state()
    if state.webhook_dispatcher is None:
        msg = "WebhookDispatcher not initialized"
        raise RuntimeError(msg)
    return state.webhook_dispatcher


@router.post("/webhooks", status_code=201)
async def register_webhook(request: Request) -> JSONResponse:
    """Register a webhook. The secret is returned only in this response."""
    data = parse_json_body(await request.body())
    owner_id = require_string(data, "owner_id")
    url = require_string(data, "url")
    events = require_string_list(data, "events")

    result = await _dispatcher().register(owner_id, url, events)
    body = WebhookRegisteredResponse.model_validate(result).model_dump()
    return JSONResponse(status_code=201, content=body)


@router.get("/webhooks", response_model=WebhookListResponse)
async def list_webhooks(request: Request) -> dict[str, Any]:
    """List an owner's webhooks (without secrets)."""
    owner_id = require_query(request, "owner_id")
    return await _dispatcher().list_webhooks(owner_id)


@router.delete("/webhooks/{webhook_id}")
async def delete_webhook(webhook_id: str, request: Request) -> dict[str, Any]:
    """Delete an owner's webhook."""
    owner_id = require_query(request, "owner_id")
    return await _dispatcher().delete(owner_id, webhook_id)


@router.post("/webhooks/{webhook_id}/active", response_model=WebhookResponse)
async def set_webhook_active(webhook_id: str, request: Request) -> dict[str, Any]:
    """Activate or deactivate a webhook."""
    data = parse_json_body(await request.body())
    owner_id = require_string(data, "owner_id")
    active = require_bool(data, "active")
    return await _dispatcher().set_active(owner_id, webhook_id, active)


@router.post("/webhooks/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(webhook_id: str, request: Request) -> dict[str, Any]:
    """Send a single test delivery."""
    data = parse_json_body(await request.body())
    owner_id = require_string(data, "owner_id")
    return await _dispatcher().test(owner_id, webhook_id)


@router.get("/webhooks/{webhook_id}/deliveries")
async def list_deliveries(webhook_id: str, request: Request) -> dict[str, Any]:
    """Delivery log of a webhook."""
    owner_id = require_query(request, "owner_id")
    return await _dispatcher().list_deliveries(owner_id, webhook_id)
