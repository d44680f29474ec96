"""Unit tests for DisputeStore."""

import pytest

from task_escrow_service.services.dispute_store import DisputeStore, DuplicateDisputeError


@pytest.mark.unit
def test_dispute_lifecycle(tmp_path) -> None:
    store = DisputeStore(db_path=str(tmp_path / "escrow.db"))
    dispute = store.insert_dispute("t-1", "a-requester", "a-worker", "Work was not delivered")

    assert dispute["dispute_id"].startswith("disp-")
    assert dispute["status"] == "open"
    assert store.has_active_dispute("t-1") is True

    store.add_evidence(dispute["dispute_id"], "a-worker", "delivery", "commit abc123")
    assert store.mark_under_review(dispute["dispute_id"], "a-arbitrator") is True
    assert store.mark_under_review(dispute["dispute_id"], "a-arbitrator") is False

    loaded = store.get_dispute(dispute["dispute_id"])
    assert loaded is not None
    assert loaded["status"] == "under_review"
    assert [item["kind"] for item in loaded["evidence"]] == ["delivery"]

    resolved_at = store.resolve(dispute["dispute_id"], "a-arbitrator", "split", None)
    assert resolved_at is not None
    assert store.resolve(dispute["dispute_id"], "a-arbitrator", "pay_worker", None) is None
    assert store.has_active_dispute("t-1") is False
    assert store.get_active_dispute_for_task("t-1") is None
    store.close()


@pytest.mark.unit
def test_one_active_dispute_per_task(tmp_path) -> None:
    """The partial unique index admits a new dispute only after resolution."""
    store = DisputeStore(db_path=str(tmp_path / "escrow.db"))
    first = store.insert_dispute("t-1", "a-requester", "a-worker", "First complaint")

    with pytest.raises(DuplicateDisputeError):
        store.insert_dispute("t-1", "a-worker", "a-requester", "Second complaint")

    store.resolve(first["dispute_id"], "a-arbitrator", "split", "Halved")
    second = store.insert_dispute("t-1", "a-worker", "a-requester", "Second complaint")
    assert second["dispute_id"] != first["dispute_id"]
    active = store.get_active_dispute_for_task("t-1")
    assert active is not None
    assert active["dispute_id"] == second["dispute_id"]
    store.close()


@pytest.mark.unit
def test_listing_and_counts(tmp_path) -> None:
    store = DisputeStore(db_path=str(tmp_path / "escrow.db"))
    first = store.insert_dispute("t-1", "a-requester", "a-worker", "Late delivery")
    store.insert_dispute("t-2", "a-worker", "a-requester", "Unpaid work")
    store.insert_dispute("t-3", "a-other", "a-third", "Unrelated")
    store.resolve(first["dispute_id"], "a-arbitrator", "refund_requester", None)

    assert len(store.list_disputes(status=None, task_id=None, initiator_id=None)) == 3
    open_disputes = store.list_disputes(status="open", task_id=None, initiator_id=None)
    assert {d["task_id"] for d in open_disputes} == {"t-2", "t-3"}
    by_task = store.list_disputes(status=None, task_id="t-2", initiator_id=None)
    assert [d["initiator_id"] for d in by_task] == ["a-worker"]

    involving_worker = store.list_agent_disputes("a-worker")
    assert {d["task_id"] for d in involving_worker} == {"t-1", "t-2"}

    assert store.count_by_status() == {"open": 2, "resolved": 1}
    assert store.count_by_resolution() == {"refund_requester": 1}
    assert len(store.list_resolution_times()) == 1
    store.close()
