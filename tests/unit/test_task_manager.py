"""Unit tests for TaskManager."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.events import EventBus, LifecycleEvent
from task_escrow_service.services.task_locks import TaskLocks
from task_escrow_service.services.task_manager import TaskManager
from task_escrow_service.services.task_store import TaskStore


@pytest.fixture
def store(tmp_path):
    task_store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    yield task_store
    task_store.close()


@pytest.fixture
def published() -> list[LifecycleEvent]:
    return []


def _manager(
    store: TaskStore,
    published: list[LifecycleEvent],
    *,
    ledger: Any = None,
    reputation: Any = None,
    min_reputation: float = 0,
) -> TaskManager:
    bus = EventBus()
    bus.subscribe(published.append)
    return TaskManager(
        store=store,
        locks=TaskLocks(),
        event_bus=bus,
        ledger_client=ledger,
        reputation_client=reputation,
        min_reputation=min_reputation,
    )


async def _create(manager: TaskManager, **overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "requester_id": "a-requester",
        "title": "Summarize a paper",
        "description": "Two paragraphs",
        "budget": Decimal("100"),
        "deadline": None,
        "required_capabilities": ["summarization"],
    }
    values.update(overrides)
    return await manager.create_task(**values)


async def _assigned(manager: TaskManager) -> tuple[dict[str, Any], dict[str, Any]]:
    task = await _create(manager)
    bid = await manager.place_bid(task["task_id"], "a-worker", Decimal("90"), 3, "")
    await manager.accept_bid(task["task_id"], bid["bid_id"], "a-requester")
    return task, bid


@pytest.mark.unit
async def test_lifecycle_publishes_one_event_per_transition(store, published) -> None:
    manager = _manager(store, published)
    task, _ = await _assigned(manager)
    await manager.complete_task(task["task_id"], "a-worker", "s3://out.md")
    verified = await manager.verify_task(task["task_id"])

    assert verified["status"] == "verified"
    assert verified["verified_at"] is not None
    assert [event.name for event in published] == [
        "task.created",
        "task.bid",
        "task.assigned",
        "task.completed",
        "task.verified",
    ]


@pytest.mark.unit
async def test_deadline_is_normalized_to_utc(store, published) -> None:
    manager = _manager(store, published)
    local = (datetime.now(UTC) + timedelta(days=1)).astimezone(timezone(timedelta(hours=2)))

    task = await _create(manager, deadline=local.isoformat())

    assert task["deadline"].endswith("Z")


@pytest.mark.unit
@pytest.mark.parametrize(
    "overrides",
    [
        {"title": "   "},
        {"title": "x" * 201},
        {"description": "x" * 10_001},
        {"budget": Decimal("0")},
        {"budget": Decimal("NaN")},
        {"required_capabilities": []},
        {"required_capabilities": ["python", " "]},
        {"required_capabilities": [f"cap-{i}" for i in range(11)]},
        {"deadline": "tomorrow"},
    ],
)
async def test_create_validation(store, published, overrides) -> None:
    manager = _manager(store, published)
    with pytest.raises(ServiceError) as exc_info:
        await _create(manager, **overrides)
    assert exc_info.value.error == "VALIDATION_ERROR"
    assert published == []


@pytest.mark.unit
async def test_only_assigned_worker_completes(store, published) -> None:
    manager = _manager(store, published)
    task, _ = await _assigned(manager)

    with pytest.raises(ServiceError) as exc_info:
        await manager.complete_task(task["task_id"], "a-intruder", "s3://out.md")
    assert exc_info.value.error == "UNAUTHORIZED"
    assert exc_info.value.status_code == 403


@pytest.mark.unit
async def test_verify_requires_completed(store, published) -> None:
    manager = _manager(store, published)
    task, _ = await _assigned(manager)

    with pytest.raises(ServiceError) as exc_info:
        await manager.verify_task(task["task_id"])
    assert exc_info.value.error == "INVALID_STATUS"


@pytest.mark.unit
async def test_accept_opens_ledger_escrow(store, published) -> None:
    ledger = AsyncMock()
    ledger.create_escrow_entry = AsyncMock(return_value="led-1")
    manager = _manager(store, published, ledger=ledger)

    task, _ = await _assigned(manager)

    ledger.create_escrow_entry.assert_awaited_once_with(
        task_id=task["task_id"], amount=Decimal("90"), payer_id="a-requester"
    )
    stored = store.get_task(task["task_id"])
    assert stored is not None
    assert stored["escrow_reference"] == "led-1"
    assert stored["ledger_status"] == "locked"


@pytest.mark.unit
async def test_ledger_failure_does_not_block_acceptance(store, published) -> None:
    ledger = AsyncMock()
    ledger.create_escrow_entry = AsyncMock(
        side_effect=ServiceError("LEDGER_UNAVAILABLE", "down", 502, {})
    )
    manager = _manager(store, published, ledger=ledger)

    task, _ = await _assigned(manager)

    stored = store.get_task(task["task_id"])
    assert stored is not None
    assert stored["status"] == "in_progress"
    assert stored["escrow_reference"] is None
    assert stored["ledger_status"] == "pending"


@pytest.mark.unit
async def test_reputation_not_consulted_without_minimum(store, published) -> None:
    reputation = AsyncMock()
    manager = _manager(store, published, reputation=reputation, min_reputation=0)

    task = await _create(manager)
    await manager.place_bid(task["task_id"], "a-worker", Decimal("10"), None, "")

    reputation.get_score.assert_not_awaited()


@pytest.mark.unit
async def test_reputation_at_minimum_admitted(store, published) -> None:
    reputation = AsyncMock()
    reputation.get_score = AsyncMock(return_value=0.5)
    manager = _manager(store, published, reputation=reputation, min_reputation=0.5)

    task = await _create(manager)
    bid = await manager.place_bid(task["task_id"], "a-worker", Decimal("10"), None, "")
    assert bid["status"] == "pending"


@pytest.mark.unit
async def test_invalid_duration(store, published) -> None:
    manager = _manager(store, published)
    task = await _create(manager)
    with pytest.raises(ServiceError) as exc_info:
        await manager.place_bid(task["task_id"], "a-worker", Decimal("10"), 0, "")
    assert exc_info.value.error == "VALIDATION_ERROR"


@pytest.mark.unit
async def test_list_open_tasks_only_posted(store, published) -> None:
    manager = _manager(store, published)
    await _assigned(manager)
    open_task = await _create(manager)

    listed = await manager.list_open_tasks(limit=10, offset=0)
    assert [task["task_id"] for task in listed["tasks"]] == [open_task["task_id"]]
    assert manager.get_stats() == {
        "total_tasks": 2,
        "tasks_by_status": {"in_progress": 1, "posted": 1},
    }
