"""Unit tests for TaskStore."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from task_escrow_service.services.task_store import DuplicateBidError, DuplicateTaskError, TaskStore
from tests.helpers import bid_row, iso, task_row


@pytest.mark.unit
def test_task_crud_and_counts(tmp_path) -> None:
    """Task operations persist, update, list, and count correctly."""
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1", budget="12.50"))
    store.insert_task(task_row("t-2", status="in_progress", worker_id="a-worker"))

    task = store.get_task("t-1")
    assert task is not None
    assert task["status"] == "posted"
    assert task["budget"] == Decimal("12.50")
    assert task["required_capabilities"] == ["python"]
    assert task["payment_released"] is False

    changed = store.update_task("t-1", {"status": "cancelled"}, expected_status=None)
    assert changed == 1

    changed_mismatch = store.update_task("t-2", {"status": "paid"}, expected_status="posted")
    assert changed_mismatch == 0

    assert store.count_tasks() == 2
    grouped = store.count_tasks_by_status()
    assert grouped == {"cancelled": 1, "in_progress": 1}
    store.close()


@pytest.mark.unit
def test_duplicate_task_id(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1"))
    with pytest.raises(DuplicateTaskError):
        store.insert_task(task_row("t-1"))
    store.close()


@pytest.mark.unit
def test_update_unknown_column_rejected(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1"))
    with pytest.raises(ValueError, match="unknown task column"):
        store.update_task("t-1", {"owner": "x"}, expected_status=None)
    store.close()


@pytest.mark.unit
def test_list_tasks_newest_first_with_filters(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    base = datetime.now(UTC)
    for index in range(3):
        store.insert_task(
            task_row(
                f"t-{index}",
                requester_id="a-alice" if index < 2 else "a-bob",
                created_at=iso(base + timedelta(seconds=index)),
            )
        )

    listed = store.list_tasks(status=None, requester_id=None, limit=None, offset=None)
    assert [task["task_id"] for task in listed] == ["t-2", "t-1", "t-0"]

    alice = store.list_tasks(status="posted", requester_id="a-alice", limit=None, offset=None)
    assert [task["task_id"] for task in alice] == ["t-1", "t-0"]

    page = store.list_tasks(status=None, requester_id=None, limit=1, offset=1)
    assert [task["task_id"] for task in page] == ["t-1"]

    skipped = store.list_tasks(status=None, requester_id=None, limit=None, offset=2)
    assert [task["task_id"] for task in skipped] == ["t-0"]
    store.close()


@pytest.mark.unit
def test_bid_operations(tmp_path) -> None:
    """Bid insert/get/list works and duplicate bids raise DuplicateBidError."""
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1"))
    store.insert_bid(bid_row("bid-1", "t-1", bidder_id="a-worker-1", amount="90"))

    task = store.get_task("t-1")
    assert task is not None
    assert task["bid_count"] == 1

    bid = store.get_bid("bid-1", "t-1")
    assert bid is not None
    assert bid["amount"] == Decimal("90")
    assert bid["status"] == "pending"
    assert bid["accepted"] is False
    assert store.get_bid("bid-1", "t-other") is None

    with pytest.raises(DuplicateBidError):
        store.insert_bid(bid_row("bid-2", "t-1", bidder_id="a-worker-1", amount="85"))

    task = store.get_task("t-1")
    assert task is not None
    assert task["bid_count"] == 1
    store.close()


@pytest.mark.unit
def test_accept_bid_rejects_siblings(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1"))
    store.insert_bid(bid_row("bid-1", "t-1", bidder_id="a-worker-1"))
    store.insert_bid(bid_row("bid-2", "t-1", bidder_id="a-worker-2"))

    assert store.accept_bid("t-1", "bid-2", "a-worker-2", iso(datetime.now(UTC))) is True

    task = store.get_task("t-1")
    assert task is not None
    assert task["status"] == "in_progress"
    assert task["worker_id"] == "a-worker-2"
    assert task["accepted_bid_id"] == "bid-2"
    statuses = {bid["bid_id"]: bid["status"] for bid in store.get_bids_for_task("t-1")}
    assert statuses == {"bid-1": "rejected", "bid-2": "accepted"}

    # The task is no longer posted, so a second acceptance writes nothing
    assert store.accept_bid("t-1", "bid-1", "a-worker-1", iso(datetime.now(UTC))) is False
    statuses = {bid["bid_id"]: bid["status"] for bid in store.get_bids_for_task("t-1")}
    assert statuses == {"bid-1": "rejected", "bid-2": "accepted"}
    store.close()


@pytest.mark.unit
def test_mark_payment_released_is_check_and_set(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1", status="verified", worker_id="a-worker"))
    now = iso(datetime.now(UTC))

    first = store.mark_payment_released(
        "t-1",
        payment_reference="pay-1",
        paid_at=now,
        ledger_status=None,
        allowed_statuses=("verified",),
    )
    second = store.mark_payment_released(
        "t-1",
        payment_reference="pay-2",
        paid_at=now,
        ledger_status=None,
        allowed_statuses=("verified", "paid"),
    )

    assert first is True
    assert second is False
    task = store.get_task("t-1")
    assert task is not None
    assert task["status"] == "paid"
    assert task["payment_released"] is True
    assert task["payment_reference"] == "pay-1"
    store.close()


@pytest.mark.unit
def test_mark_payment_released_respects_status(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1", status="disputed", worker_id="a-worker"))

    released = store.mark_payment_released(
        "t-1",
        payment_reference="pay-1",
        paid_at=iso(datetime.now(UTC)),
        ledger_status=None,
        allowed_statuses=("verified",),
    )
    assert released is False
    task = store.get_task("t-1")
    assert task is not None
    assert task["status"] == "disputed"
    assert task["payment_released"] is False
    store.close()


@pytest.mark.unit
def test_ledger_retry_candidates(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    store.insert_task(task_row("t-1", status="verified", worker_id="a-worker"))
    store.insert_task(task_row("t-2", status="verified", worker_id="a-worker"))
    now = iso(datetime.now(UTC))
    for task_id, ledger_status in (("t-1", "failed"), ("t-2", None)):
        store.mark_payment_released(
            task_id,
            payment_reference=f"pay-{task_id}",
            paid_at=now,
            ledger_status=ledger_status,
            allowed_statuses=("verified",),
        )

    candidates = store.list_ledger_retry_candidates()
    assert [task["task_id"] for task in candidates] == ["t-1"]
    store.close()


@pytest.mark.unit
def test_delete_terminal_tasks(tmp_path) -> None:
    store = TaskStore(db_path=str(tmp_path / "escrow.db"))
    old = iso(datetime.now(UTC) - timedelta(days=60))
    store.insert_task(task_row("t-old", status="expired", created_at=old))
    store.insert_bid(bid_row("bid-old", "t-old"))
    store.insert_task(task_row("t-live", status="posted", created_at=old))
    store.insert_task(task_row("t-new", status="cancelled"))

    cutoff = iso(datetime.now(UTC) - timedelta(days=30))
    deleted = store.delete_terminal_tasks(("expired", "cancelled", "paid"), cutoff)

    assert deleted == ["t-old"]
    assert store.get_task("t-old") is None
    assert store.get_bids_for_task("t-old") == []
    assert store.get_task("t-live") is not None
    assert store.get_task("t-new") is not None
    store.close()
