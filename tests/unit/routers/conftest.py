"""Router test fixtures with a temp database and a mocked webhook transport."""

from __future__ import annotations

import json
import os
import uuid
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import get_app_state, reset_app_state
from tests.helpers import future_deadline, write_config

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed agent IDs
# ---------------------------------------------------------------------------
REQUESTER_ID = "a-requester"
WORKER_ID = "a-worker"
OTHER_WORKER_ID = "a-other-worker"
ARBITRATOR_ID = "a-arbitrator"


def make_agent_id() -> str:
    """Generate a unique agent ID."""
    return f"a-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and a recording webhook transport."""
    config_path = write_config(tmp_path, db_path=str(tmp_path / "test.db"))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = config_path

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Webhook receivers answer 200 unless a test installs its own handler
        received: list[httpx.Request] = []
        test_app.state.webhook_requests = received
        test_app.state.webhook_status = 200

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(test_app.state.webhook_status)

        if state.webhook_dispatcher is not None:
            await state.webhook_dispatcher._client.aclose()
            state.webhook_dispatcher._client = httpx.AsyncClient(
                transport=httpx.MockTransport(handler)
            )

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def webhook_requests(app: Any) -> list[httpx.Request]:
    """Requests received by the mocked webhook endpoint."""
    received: list[httpx.Request] = app.state.webhook_requests
    return received


# ---------------------------------------------------------------------------
# Background work helpers
# ---------------------------------------------------------------------------
async def run_scheduler() -> None:
    """Execute every due release job now."""
    state = get_app_state()
    assert state.escrow_scheduler is not None
    await state.escrow_scheduler.tick()


async def drain_webhooks() -> None:
    """Wait until every queued webhook delivery has been processed."""
    state = get_app_state()
    assert state.webhook_dispatcher is not None
    await state.webhook_dispatcher.join()


def delivered_events(requests: list[httpx.Request]) -> list[str]:
    """Event names of the webhook requests received so far."""
    return [json.loads(request.content)["event"] for request in requests]


# ---------------------------------------------------------------------------
# Task lifecycle helper functions
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    requester_id: str = REQUESTER_ID,
    budget: str = "100",
    **overrides: Any,
) -> dict[str, Any]:
    """Create a task and return its JSON."""
    body: dict[str, Any] = {
        "requester_id": requester_id,
        "title": "Summarise a paper",
        "description": "Two paragraphs",
        "budget": budget,
        "deadline": future_deadline(),
        "required_capabilities": ["summarisation"],
    }
    body.update(overrides)
    response = await client.post("/tasks", json=body)
    assert response.status_code == 201, response.text
    task: dict[str, Any] = response.json()
    return task


async def place_bid(
    client: AsyncClient,
    task_id: str,
    bidder_id: str = WORKER_ID,
    amount: str = "90",
) -> dict[str, Any]:
    """Place a bid and return its JSON."""
    response = await client.post(
        f"/tasks/{task_id}/bids",
        json={"bidder_id": bidder_id, "amount": amount, "estimated_duration_hours": 2},
    )
    assert response.status_code == 201, response.text
    bid: dict[str, Any] = response.json()
    return bid


async def accept_bid(
    client: AsyncClient,
    task_id: str,
    bid_id: str,
    requester_id: str = REQUESTER_ID,
) -> dict[str, Any]:
    """Accept a bid and return the task JSON."""
    response = await client.post(
        f"/tasks/{task_id}/bids/{bid_id}/accept", json={"requester_id": requester_id}
    )
    assert response.status_code == 200, response.text
    task: dict[str, Any] = response.json()
    return task


async def complete_task(
    client: AsyncClient,
    task_id: str,
    worker_id: str = WORKER_ID,
) -> dict[str, Any]:
    """Complete a task and return its JSON."""
    response = await client.post(
        f"/tasks/{task_id}/complete",
        json={"worker_id": worker_id, "delivery_reference": "s3://deliveries/summary.md"},
    )
    assert response.status_code == 200, response.text
    task: dict[str, Any] = response.json()
    return task


async def verify_task(client: AsyncClient, task_id: str) -> dict[str, Any]:
    """Verify a task and return its JSON."""
    response = await client.post(f"/tasks/{task_id}/verify")
    assert response.status_code == 200, response.text
    task: dict[str, Any] = response.json()
    return task


async def setup_in_progress_task(client: AsyncClient, amount: str = "90") -> str:
    """Create a task, bid on it and accept the bid. Returns the task ID."""
    task = await create_task(client)
    bid = await place_bid(client, task["task_id"], amount=amount)
    await accept_bid(client, task["task_id"], bid["bid_id"])
    return str(task["task_id"])


async def setup_completed_task(client: AsyncClient, amount: str = "90") -> str:
    """Drive a task to completed. Returns the task ID."""
    task_id = await setup_in_progress_task(client, amount=amount)
    await complete_task(client, task_id)
    return task_id


async def open_dispute(
    client: AsyncClient,
    task_id: str,
    initiator_id: str = REQUESTER_ID,
    respondent_id: str = WORKER_ID,
) -> dict[str, Any]:
    """Open a dispute and return its JSON."""
    response = await client.post(
        "/disputes",
        json={
            "task_id": task_id,
            "initiator_id": initiator_id,
            "respondent_id": respondent_id,
            "reason": "The delivered summary is missing the results section.",
        },
    )
    assert response.status_code == 201, response.text
    dispute: dict[str, Any] = response.json()
    return dispute
