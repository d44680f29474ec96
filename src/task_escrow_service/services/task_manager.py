"""Task lifecycle management: creation, bidding, assignment, completion and verification."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.events import (
    BidPlaced,
    TaskAssigned,
    TaskCancelled,
    TaskCompleted,
    TaskCreated,
    TaskVerified,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.services.task_store import DuplicateBidError, DuplicateTaskError
from task_escrow_service.services.timestamps import now_iso, parse_iso, to_iso

if TYPE_CHECKING:
    from task_escrow_service.clients.ledger_client import LedgerClient
    from task_escrow_service.clients.reputation_client import ReputationClient
    from task_escrow_service.events import EventBus
    from task_escrow_service.services.task_locks import TaskLocks
    from task_escrow_service.services.task_store import TaskStore

TASK_STATUSES = frozenset(
    {
        "posted",
        "in_progress",
        "completed",
        "verified",
        "disputed",
        "resolved",
        "paid",
        "cancelled",
        "expired",
    }
)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10_000
MAX_CAPABILITIES = 10
MAX_BID_MESSAGE_LENGTH = 500
MAX_LIST_LIMIT = 100


def bid_to_response(bid: dict[str, Any]) -> dict[str, Any]:
    """Render a bid row as JSON-ready dict."""
    return {
        "bid_id": bid["bid_id"],
        "task_id": bid["task_id"],
        "bidder_id": bid["bidder_id"],
        "amount": str(bid["amount"]),
        "estimated_duration_hours": bid["estimated_duration_hours"],
        "message": bid["message"],
        "status": bid["status"],
        "accepted": bid["accepted"],
        "created_at": bid["created_at"],
    }


def task_to_response(task: dict[str, Any]) -> dict[str, Any]:
    """Render a task row as JSON-ready dict."""
    response = dict(task)
    response["budget"] = str(task["budget"])
    return response


def _task_to_summary(task: dict[str, Any]) -> dict[str, Any]:
    return {
        "task_id": task["task_id"],
        "requester_id": task["requester_id"],
        "title": task["title"],
        "budget": str(task["budget"]),
        "deadline": task["deadline"],
        "required_capabilities": task["required_capabilities"],
        "status": task["status"],
        "bid_count": task["bid_count"],
        "created_at": task["created_at"],
    }


class TaskManager:
    """
    Owns the task state machine.

    Every mutating operation runs under the task's lock from TaskLocks, writes
    through TaskStore with an expected-status guard and publishes one typed
    lifecycle event on the EventBus once the write is durable.
    """

    def __init__(
        self,
        store: TaskStore,
        locks: TaskLocks,
        event_bus: EventBus,
        ledger_client: LedgerClient | None,
        reputation_client: ReputationClient | None,
        min_reputation: float,
    ) -> None:
        self._store = store
        self._locks = locks
        self._event_bus = event_bus
        self._ledger_client = ledger_client
        self._reputation_client = reputation_client
        self._min_reputation = min_reputation
        self._logger = get_logger(__name__)

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    @staticmethod
    def _invalid_status(task: dict[str, Any], action: str, expected: str) -> ServiceError:
        return ServiceError(
            "INVALID_STATUS",
            f"Cannot {action} task in '{task['status']}' status, must be '{expected}'",
            400,
            {"task_id": task["task_id"], "status": task["status"]},
        )

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_status": self._store.count_tasks_by_status(),
        }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(
        self,
        requester_id: str,
        title: str,
        description: str,
        budget: Decimal,
        deadline: str | None,
        required_capabilities: list[str],
    ) -> dict[str, Any]:
        """
        Create a task in status 'posted'.

        Raises VALIDATION_ERROR for an empty or overlong title, an overlong
        description, a non-positive budget, a deadline not in the future, or
        a capability list that is empty, too long or holds blank entries.
        """
        if not requester_id:
            raise ServiceError("VALIDATION_ERROR", "requester_id must not be empty", 400, {})
        if not title.strip() or len(title) > MAX_TITLE_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"title must be 1-{MAX_TITLE_LENGTH} characters",
                400,
                {},
            )
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"description must be at most {MAX_DESCRIPTION_LENGTH} characters",
                400,
                {},
            )
        if not budget.is_finite() or budget <= 0:
            raise ServiceError("VALIDATION_ERROR", "budget must be greater than 0", 400, {})
        if not 1 <= len(required_capabilities) <= MAX_CAPABILITIES:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"required_capabilities must hold 1-{MAX_CAPABILITIES} entries",
                400,
                {},
            )
        if any(not capability.strip() for capability in required_capabilities):
            raise ServiceError(
                "VALIDATION_ERROR", "required_capabilities must not contain empty values", 400, {}
            )

        normalized_deadline: str | None = None
        if deadline is not None:
            try:
                deadline_dt = parse_iso(deadline)
            except ValueError as exc:
                raise ServiceError(
                    "VALIDATION_ERROR", "deadline must be an ISO 8601 timestamp", 400, {}
                ) from exc
            if deadline_dt <= datetime.now(UTC):
                raise ServiceError("VALIDATION_ERROR", "deadline must be in the future", 400, {})
            normalized_deadline = to_iso(deadline_dt)

        task_id = f"t-{uuid.uuid4()}"
        task = {
            "task_id": task_id,
            "requester_id": requester_id,
            "title": title,
            "description": description,
            "budget": budget,
            "deadline": normalized_deadline,
            "required_capabilities": required_capabilities,
            "status": "posted",
            "bid_count": 0,
            "worker_id": None,
            "accepted_bid_id": None,
            "delivery_reference": None,
            "payment_released": False,
            "payment_reference": None,
            "dispute_id": None,
            "escrow_reference": None,
            "ledger_status": None,
            "cancel_reason": None,
            "created_at": now_iso(),
            "assigned_at": None,
            "completed_at": None,
            "verified_at": None,
            "paid_at": None,
            "cancelled_at": None,
            "expired_at": None,
        }
        try:
            self._store.insert_task(task)
        except DuplicateTaskError as exc:
            raise ServiceError("TASK_ALREADY_EXISTS", "Task already exists", 409, {}) from exc

        self._logger.info(
            "Task created",
            extra={"task_id": task_id, "requester_id": requester_id, "budget": str(budget)},
        )
        self._event_bus.publish(
            TaskCreated(
                task_id=task_id,
                requester_id=requester_id,
                title=title,
                budget=str(budget),
                deadline=normalized_deadline,
            )
        )
        return task_to_response(task)

    async def list_open_tasks(
        self,
        limit: int,
        offset: int,
        requester_id: str | None = None,
    ) -> dict[str, Any]:
        """List posted tasks, newest first."""
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ServiceError(
                "VALIDATION_ERROR", f"limit must be between 1 and {MAX_LIST_LIMIT}", 400, {}
            )
        if offset < 0:
            raise ServiceError("VALIDATION_ERROR", "offset must be >= 0", 400, {})

        tasks = self._store.list_tasks(
            status="posted",
            requester_id=requester_id,
            limit=limit,
            offset=offset,
        )
        return {
            "tasks": [_task_to_summary(task) for task in tasks],
            "limit": limit,
            "offset": offset,
        }

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Return a task with its bids."""
        task = self._require_task(task_id)
        response = task_to_response(task)
        response["bids"] = [bid_to_response(bid) for bid in self._store.get_bids_for_task(task_id)]
        return response

    async def cancel_task(
        self,
        task_id: str,
        requester_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """
        Cancel a posted or in-progress task on behalf of its requester.

        Error precedence: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATUS.
        """
        async with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if requester_id != task["requester_id"]:
                raise ServiceError(
                    "FORBIDDEN", "Only the requester can cancel this task", 403, {}
                )
            if task["status"] not in ("posted", "in_progress"):
                raise ServiceError(
                    "INVALID_STATUS",
                    f"Cannot cancel task in '{task['status']}' status",
                    400,
                    {"task_id": task_id, "status": task["status"]},
                )

            cancel_reason = reason if reason else "cancelled_by_requester"
            cancelled_at = now_iso()
            changed = self._store.update_task(
                task_id,
                {
                    "status": "cancelled",
                    "worker_id": None,
                    "cancel_reason": cancel_reason,
                    "cancelled_at": cancelled_at,
                },
                expected_status=task["status"],
            )
            if changed == 0:
                raise self._invalid_status(self._require_task(task_id), "cancel", task["status"])

            self._logger.info(
                "Task cancelled",
                extra={"task_id": task_id, "reason": cancel_reason},
            )
            self._event_bus.publish(
                TaskCancelled(task_id=task_id, requester_id=requester_id, reason=cancel_reason)
            )
            return task_to_response(self._require_task(task_id))

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    async def _check_reputation(self, bidder_id: str) -> None:
        if self._min_reputation <= 0 or self._reputation_client is None:
            return
        score = await self._reputation_client.get_score(bidder_id)
        if score < self._min_reputation:
            raise ServiceError(
                "INSUFFICIENT_REPUTATION",
                f"Bidder reputation {score} is below the required {self._min_reputation}",
                403,
                {"score": score, "min_reputation": self._min_reputation},
            )

    async def place_bid(
        self,
        task_id: str,
        bidder_id: str,
        amount: Decimal,
        estimated_duration_hours: int | None,
        message: str,
    ) -> dict[str, Any]:
        """
        Place a bid on a posted task.

        Error precedence:
        1. VALIDATION_ERROR: empty bidder, bad duration, overlong message
        2. TASK_NOT_FOUND
        3. INVALID_STATUS: task not posted
        4. VALIDATION_ERROR: amount <= 0 or above the budget
        5. SELF_BID: bidder is the requester
        6. INSUFFICIENT_REPUTATION / REPUTATION_SERVICE_UNAVAILABLE
        7. BID_ALREADY_EXISTS
        """
        if not bidder_id:
            raise ServiceError("VALIDATION_ERROR", "bidder_id must not be empty", 400, {})
        if estimated_duration_hours is not None and estimated_duration_hours < 1:
            raise ServiceError(
                "VALIDATION_ERROR", "estimated_duration_hours must be >= 1", 400, {}
            )
        if len(message) > MAX_BID_MESSAGE_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"message must be at most {MAX_BID_MESSAGE_LENGTH} characters",
                400,
                {},
            )

        async with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if task["status"] != "posted":
                raise self._invalid_status(task, "bid on", "posted")
            if not amount.is_finite() or amount <= 0:
                raise ServiceError("VALIDATION_ERROR", "amount must be greater than 0", 400, {})
            if amount > task["budget"]:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    "amount must not exceed the task budget",
                    400,
                    {"budget": str(task["budget"])},
                )
            if bidder_id == task["requester_id"]:
                raise ServiceError("SELF_BID", "Cannot bid on your own task", 400, {})

            await self._check_reputation(bidder_id)

            bid = {
                "bid_id": f"bid-{uuid.uuid4()}",
                "task_id": task_id,
                "bidder_id": bidder_id,
                "amount": amount,
                "estimated_duration_hours": estimated_duration_hours,
                "message": message,
                "status": "pending",
                "accepted": False,
                "created_at": now_iso(),
            }
            try:
                self._store.insert_bid(bid)
            except DuplicateBidError as exc:
                raise ServiceError(
                    "BID_ALREADY_EXISTS",
                    "This agent already bid on this task",
                    409,
                    {},
                ) from exc

            self._logger.info(
                "Bid placed",
                extra={"task_id": task_id, "bid_id": bid["bid_id"], "bidder_id": bidder_id},
            )
            self._event_bus.publish(
                BidPlaced(
                    task_id=task_id,
                    bid_id=str(bid["bid_id"]),
                    bidder_id=bidder_id,
                    amount=str(amount),
                )
            )
            return bid_to_response(bid)

    async def list_bids(self, task_id: str) -> dict[str, Any]:
        """List bids for a task in submission order."""
        self._require_task(task_id)
        return {
            "task_id": task_id,
            "bids": [bid_to_response(bid) for bid in self._store.get_bids_for_task(task_id)],
        }

    async def _open_ledger_escrow(self, task: dict[str, Any], amount: Decimal) -> None:
        """Best-effort ledger escrow entry for a freshly assigned task."""
        if self._ledger_client is None:
            return
        task_id = str(task["task_id"])
        try:
            reference = await self._ledger_client.create_escrow_entry(
                task_id=task_id,
                amount=amount,
                payer_id=str(task["requester_id"]),
            )
        except ServiceError:
            self._logger.error(
                "Ledger escrow entry creation failed, marking pending",
                extra={"task_id": task_id},
            )
            self._store.update_task(task_id, {"ledger_status": "pending"}, expected_status=None)
            return
        self._store.update_task(
            task_id,
            {"escrow_reference": reference, "ledger_status": "locked"},
            expected_status=None,
        )

    async def accept_bid(self, task_id: str, bid_id: str, requester_id: str) -> dict[str, Any]:
        """
        Accept a bid, assign its bidder as worker and move the task to in_progress.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the requester
        3. INVALID_STATUS: task not posted
        4. BID_NOT_FOUND
        """
        async with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if requester_id != task["requester_id"]:
                raise ServiceError("FORBIDDEN", "Only the requester can accept bids", 403, {})
            if task["status"] != "posted":
                raise self._invalid_status(task, "accept bid on", "posted")

            bid = self._store.get_bid(bid_id, task_id)
            if bid is None:
                raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {"bid_id": bid_id})

            accepted = self._store.accept_bid(
                task_id=task_id,
                bid_id=bid_id,
                worker_id=str(bid["bidder_id"]),
                assigned_at=now_iso(),
            )
            if not accepted:
                raise self._invalid_status(self._require_task(task_id), "accept bid on", "posted")

            self._logger.info(
                "Bid accepted",
                extra={"task_id": task_id, "bid_id": bid_id, "worker_id": bid["bidder_id"]},
            )
            await self._open_ledger_escrow(task, bid["amount"])

            self._event_bus.publish(
                TaskAssigned(
                    task_id=task_id,
                    bid_id=bid_id,
                    worker_id=str(bid["bidder_id"]),
                    amount=str(bid["amount"]),
                )
            )
            return task_to_response(self._require_task(task_id))

    # ------------------------------------------------------------------
    # Completion and verification
    # ------------------------------------------------------------------

    async def complete_task(
        self,
        task_id: str,
        worker_id: str,
        delivery_reference: str,
    ) -> dict[str, Any]:
        """
        Mark an in-progress task completed by its assigned worker.

        Error precedence: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_STATUS.
        """
        async with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if task["worker_id"] is None or worker_id != task["worker_id"]:
                raise ServiceError(
                    "UNAUTHORIZED",
                    "Only the assigned worker can complete this task",
                    403,
                    {},
                )
            if task["status"] != "in_progress":
                raise self._invalid_status(task, "complete", "in_progress")

            changed = self._store.update_task(
                task_id,
                {
                    "status": "completed",
                    "delivery_reference": delivery_reference,
                    "completed_at": now_iso(),
                },
                expected_status="in_progress",
            )
            if changed == 0:
                raise self._invalid_status(self._require_task(task_id), "complete", "in_progress")

            self._logger.info("Task completed", extra={"task_id": task_id, "worker_id": worker_id})
            self._event_bus.publish(
                TaskCompleted(
                    task_id=task_id,
                    worker_id=worker_id,
                    delivery_reference=delivery_reference,
                )
            )
            return task_to_response(self._require_task(task_id))

    async def verify_task(self, task_id: str) -> dict[str, Any]:
        """Verify a completed task. Publishes task.verified, which schedules escrow release."""
        async with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if task["status"] != "completed":
                raise self._invalid_status(task, "verify", "completed")

            changed = self._store.update_task(
                task_id,
                {"status": "verified", "verified_at": now_iso()},
                expected_status="completed",
            )
            if changed == 0:
                raise self._invalid_status(self._require_task(task_id), "verify", "completed")

            self._logger.info("Task verified", extra={"task_id": task_id})
            self._event_bus.publish(TaskVerified(task_id=task_id, worker_id=str(task["worker_id"])))
            return task_to_response(self._require_task(task_id))
