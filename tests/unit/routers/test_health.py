"""Health endpoint tests."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import create_task, setup_in_progress_task


@pytest.mark.unit
async def test_health_returns_ok_with_correct_schema(client):
    """GET /health returns 200 with the expected fields."""
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert isinstance(data["uptime_seconds"], (int, float))
    assert data["started_at"].endswith("Z")
    assert data["total_tasks"] == 0
    assert data["tasks_by_status"] == {}
    assert data["active_task_locks"] == 0
    assert data["auto_release_enabled"] is True
    assert data["queued_webhook_deliveries"] == 0


@pytest.mark.unit
async def test_health_task_counts_reflect_actual_data(client):
    """Task counts are grouped by status."""
    await create_task(client)
    await setup_in_progress_task(client)

    data = (await client.get("/health")).json()
    assert data["total_tasks"] == 2
    assert data["tasks_by_status"] == {"posted": 1, "in_progress": 1}


@pytest.mark.unit
async def test_health_post_not_allowed(client):
    """POST /health is rejected with 405."""
    response = await client.post("/health")
    assert response.status_code == 405
    assert response.json()["error"] == "METHOD_NOT_ALLOWED"


@pytest.mark.unit
async def test_health_reports_auto_release_switch(client):
    """Turning auto-release off is visible on the health endpoint."""
    response = await client.put("/escrow/config", json={"enabled": False})
    assert response.status_code == 200

    data = (await client.get("/health")).json()
    assert data["auto_release_enabled"] is False
