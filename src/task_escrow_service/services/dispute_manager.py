"""Dispute gate: opening, evidence, arbitration and the release block."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.events import DisputeOpened, DisputeResolved, TaskCancelled
from task_escrow_service.logging import get_logger
from task_escrow_service.services.dispute_store import DuplicateDisputeError
from task_escrow_service.services.timestamps import now_iso, parse_iso

if TYPE_CHECKING:
    from task_escrow_service.events import EventBus
    from task_escrow_service.services.dispute_store import DisputeStore
    from task_escrow_service.services.escrow_scheduler import EscrowScheduler
    from task_escrow_service.services.task_locks import TaskLocks
    from task_escrow_service.services.task_store import TaskStore

DISPUTE_STATUSES = frozenset({"open", "under_review", "resolved"})
RESOLUTIONS = frozenset({"refund_requester", "pay_worker", "split"})
EVIDENCE_KINDS = frozenset({"message", "delivery", "screenshot", "other"})

_DISPUTABLE_STATUSES = frozenset({"in_progress", "completed", "verified"})

MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 500
MAX_EVIDENCE_LENGTH = 2000
MAX_RESOLUTION_REASON_LENGTH = 1000

DISPUTE_REFUND_REASON = "dispute_refund"


class DisputeManager:
    """
    Owns dispute records and answers whether a task's escrow release is blocked.

    Opening and resolving a dispute mutate the task, so both run under the
    task's lock. A ``pay_worker`` resolution hands off to the escrow
    scheduler's manual release once the lock is released.
    """

    def __init__(
        self,
        store: DisputeStore,
        task_store: TaskStore,
        locks: TaskLocks,
        event_bus: EventBus,
    ) -> None:
        self._store = store
        self._task_store = task_store
        self._locks = locks
        self._event_bus = event_bus
        self._escrow_scheduler: EscrowScheduler | None = None
        self._logger = get_logger(__name__)

    def set_escrow_scheduler(self, escrow_scheduler: EscrowScheduler) -> None:
        """Wire the scheduler used for pay_worker resolutions."""
        self._escrow_scheduler = escrow_scheduler

    def _require_dispute(self, dispute_id: str) -> dict[str, Any]:
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError(
                "DISPUTE_NOT_FOUND", "Dispute not found", 404, {"dispute_id": dispute_id}
            )
        return dispute

    def is_release_blocked(self, task_id: str) -> bool:
        """Return True while the task has an open or under-review dispute."""
        return self._store.has_active_dispute(task_id)

    async def open_dispute(
        self,
        task_id: str,
        initiator_id: str,
        respondent_id: str,
        reason: str,
    ) -> dict[str, Any]:
        """
        Open a dispute between a task's requester and its worker.

        Error precedence:
        1. VALIDATION_ERROR: reason length
        2. TASK_NOT_FOUND
        3. DISPUTE_ALREADY_OPEN
        4. FORBIDDEN: parties are not the requester and the worker
        5. INVALID_STATUS: task not in_progress, completed or verified
        """
        if not MIN_REASON_LENGTH <= len(reason.strip()) <= MAX_REASON_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"reason must be {MIN_REASON_LENGTH}-{MAX_REASON_LENGTH} characters",
                400,
                {},
            )

        async with self._locks.hold(task_id):
            task = self._task_store.get_task(task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})

            active = self._store.get_active_dispute_for_task(task_id)
            if active is not None:
                raise ServiceError(
                    "DISPUTE_ALREADY_OPEN",
                    "Task already has an active dispute",
                    409,
                    {"dispute_id": active["dispute_id"]},
                )

            parties = {task["requester_id"], task["worker_id"]}
            if task["worker_id"] is None or {initiator_id, respondent_id} != parties:
                raise ServiceError(
                    "FORBIDDEN",
                    "Disputes can only be opened between the requester and the worker",
                    403,
                    {},
                )

            if task["status"] not in _DISPUTABLE_STATUSES:
                raise ServiceError(
                    "INVALID_STATUS",
                    f"Cannot dispute task in '{task['status']}' status",
                    400,
                    {"task_id": task_id, "status": task["status"]},
                )

            try:
                dispute = self._store.insert_dispute(
                    task_id=task_id,
                    initiator_id=initiator_id,
                    respondent_id=respondent_id,
                    reason=reason,
                )
            except DuplicateDisputeError as exc:
                raise ServiceError(
                    "DISPUTE_ALREADY_OPEN", "Task already has an active dispute", 409, {}
                ) from exc

            self._task_store.update_task(
                task_id,
                {"status": "disputed", "dispute_id": dispute["dispute_id"]},
                expected_status=task["status"],
            )

            self._logger.info(
                "Dispute opened",
                extra={
                    "dispute_id": dispute["dispute_id"],
                    "task_id": task_id,
                    "initiator_id": initiator_id,
                },
            )
            self._event_bus.publish(
                DisputeOpened(
                    dispute_id=dispute["dispute_id"],
                    task_id=task_id,
                    initiator_id=initiator_id,
                    respondent_id=respondent_id,
                )
            )
            return dispute

    async def submit_evidence(
        self,
        dispute_id: str,
        party_id: str,
        kind: str,
        content: str,
    ) -> dict[str, Any]:
        """Append evidence from one of the dispute's parties."""
        if kind not in EVIDENCE_KINDS:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"kind must be one of: {', '.join(sorted(EVIDENCE_KINDS))}",
                400,
                {},
            )
        if not 1 <= len(content) <= MAX_EVIDENCE_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"content must be 1-{MAX_EVIDENCE_LENGTH} characters",
                400,
                {},
            )

        dispute = self._require_dispute(dispute_id)
        if dispute["status"] == "resolved":
            raise ServiceError(
                "INVALID_STATUS", "Cannot add evidence to a resolved dispute", 400, {}
            )
        if party_id not in (dispute["initiator_id"], dispute["respondent_id"]):
            raise ServiceError(
                "FORBIDDEN", "Only dispute parties can submit evidence", 403, {}
            )

        self._store.add_evidence(dispute_id, party_id, kind, content)
        self._logger.info(
            "Evidence submitted",
            extra={"dispute_id": dispute_id, "party_id": party_id, "kind": kind},
        )
        return self._require_dispute(dispute_id)

    async def review_dispute(self, dispute_id: str, arbitrator_id: str) -> dict[str, Any]:
        """Move an open dispute to under_review and record its arbitrator."""
        if not arbitrator_id:
            raise ServiceError("VALIDATION_ERROR", "arbitrator_id must not be empty", 400, {})

        dispute = self._require_dispute(dispute_id)
        if dispute["status"] != "open" or not self._store.mark_under_review(
            dispute_id, arbitrator_id
        ):
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot review dispute in '{dispute['status']}' status, must be 'open'",
                400,
                {},
            )
        return self._require_dispute(dispute_id)

    async def resolve_dispute(
        self,
        dispute_id: str,
        arbitrator_id: str,
        outcome: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """
        Record the arbitration outcome and apply it to the task.

        - refund_requester: the task is cancelled with reason 'dispute_refund'.
        - split: the task moves to 'resolved'; settlement is left to the ledger.
        - pay_worker: the escrow is released immediately after the dispute
          is closed. A failed release is logged; the resolution still stands.
        """
        if not arbitrator_id:
            raise ServiceError("VALIDATION_ERROR", "arbitrator_id must not be empty", 400, {})
        if outcome not in RESOLUTIONS:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"outcome must be one of: {', '.join(sorted(RESOLUTIONS))}",
                400,
                {},
            )
        if reason is not None and len(reason) > MAX_RESOLUTION_REASON_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"reason must be at most {MAX_RESOLUTION_REASON_LENGTH} characters",
                400,
                {},
            )

        dispute = self._require_dispute(dispute_id)
        task_id = dispute["task_id"]

        async with self._locks.hold(task_id):
            resolved_at = self._store.resolve(dispute_id, arbitrator_id, outcome, reason)
            if resolved_at is None:
                raise ServiceError("INVALID_STATUS", "Dispute is already resolved", 400, {})

            task = self._task_store.get_task(task_id)
            if task is not None and outcome == "refund_requester":
                self._task_store.update_task(
                    task_id,
                    {
                        "status": "cancelled",
                        "worker_id": None,
                        "cancel_reason": DISPUTE_REFUND_REASON,
                        "cancelled_at": resolved_at,
                    },
                    expected_status="disputed",
                )
            elif task is not None and outcome == "split":
                self._task_store.update_task(
                    task_id, {"status": "resolved"}, expected_status="disputed"
                )

            self._logger.info(
                "Dispute resolved",
                extra={"dispute_id": dispute_id, "task_id": task_id, "resolution": outcome},
            )
            self._event_bus.publish(
                DisputeResolved(
                    dispute_id=dispute_id,
                    task_id=task_id,
                    arbitrator_id=arbitrator_id,
                    resolution=outcome,
                )
            )
            if task is not None and outcome == "refund_requester":
                self._event_bus.publish(
                    TaskCancelled(
                        task_id=task_id,
                        requester_id=str(task["requester_id"]),
                        reason=DISPUTE_REFUND_REASON,
                    )
                )

        if outcome == "pay_worker" and self._escrow_scheduler is not None:
            try:
                await self._escrow_scheduler.manual_release(
                    task_id,
                    arbitrator_id,
                    reason if reason else "dispute resolved in favour of worker",
                )
            except ServiceError as exc:
                self._logger.warning(
                    "Release after pay_worker resolution failed",
                    extra={"dispute_id": dispute_id, "task_id": task_id, "error_code": exc.error},
                )

        return self._require_dispute(dispute_id)

    async def get_dispute(self, dispute_id: str) -> dict[str, Any]:
        """Return one dispute with its evidence."""
        return self._require_dispute(dispute_id)

    async def list_disputes(
        self,
        status: str | None,
        task_id: str | None,
        initiator_id: str | None,
    ) -> dict[str, Any]:
        """List disputes filtered by status, task and initiator."""
        if status is not None and status not in DISPUTE_STATUSES:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"status must be one of: {', '.join(sorted(DISPUTE_STATUSES))}",
                400,
                {},
            )
        disputes = self._store.list_disputes(status, task_id, initiator_id)
        return {"disputes": disputes, "total": len(disputes)}

    async def list_agent_disputes(self, agent_id: str) -> dict[str, Any]:
        """Disputes an agent is party to, with per-role counts."""
        disputes = self._store.list_agent_disputes(agent_id)
        return {
            "agent_id": agent_id,
            "disputes": disputes,
            "total": len(disputes),
            "as_initiator": sum(1 for d in disputes if d["initiator_id"] == agent_id),
            "as_respondent": sum(1 for d in disputes if d["respondent_id"] == agent_id),
            "active": sum(1 for d in disputes if d["status"] != "resolved"),
        }

    async def get_stats(self) -> dict[str, Any]:
        """Counts by status and resolution plus the average time to resolve."""
        by_status = {status: 0 for status in sorted(DISPUTE_STATUSES)}
        by_status.update(self._store.count_by_status())
        by_resolution = {resolution: 0 for resolution in sorted(RESOLUTIONS)}
        by_resolution.update(self._store.count_by_resolution())

        durations = [
            (parse_iso(resolved_at) - parse_iso(created_at)).total_seconds()
            for created_at, resolved_at in self._store.list_resolution_times()
        ]
        average = sum(durations) / len(durations) if durations else None

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_resolution": by_resolution,
            "average_resolution_seconds": average,
            "generated_at": now_iso(),
        }
