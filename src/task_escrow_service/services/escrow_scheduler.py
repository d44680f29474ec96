"""Delayed escrow release: durable jobs, release checks and ledger settlement."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.events import PaymentReleased, TaskVerified
from task_escrow_service.logging import get_logger
from task_escrow_service.services.timestamps import now_iso, to_iso

if TYPE_CHECKING:
    from task_escrow_service.clients.ledger_client import LedgerClient
    from task_escrow_service.config import EscrowConfig
    from task_escrow_service.events import EventBus, LifecycleEvent
    from task_escrow_service.services.dispute_manager import DisputeManager
    from task_escrow_service.services.release_job_store import ReleaseJobStore
    from task_escrow_service.services.task_locks import TaskLocks
    from task_escrow_service.services.task_store import TaskStore

MANUAL_RELEASE_STATUSES: tuple[str, ...] = ("completed", "verified", "disputed", "resolved")
AUTO_RELEASE_STATUSES: tuple[str, ...] = ("verified",)

# Per-task back-off between ledger settlement retries
LEDGER_RETRY_BASE_SECONDS = 5.0
LEDGER_RETRY_MAX_SECONDS = 300.0


class EscrowScheduler:
    """
    Releases escrowed payment to the worker once a verified task's delay elapses.

    ``task.verified`` inserts a durable release job. The background loop
    executes due jobs; each execution re-reads the task and the dispute gate
    under the task's lock and either releases or marks the job skipped. The
    release itself is a check-and-set on ``payment_released``, so a task can
    be paid at most once no matter how many jobs or manual releases race.
    """

    def __init__(
        self,
        task_store: TaskStore,
        job_store: ReleaseJobStore,
        dispute_gate: DisputeManager,
        locks: TaskLocks,
        event_bus: EventBus,
        ledger_client: LedgerClient | None,
        config: EscrowConfig,
    ) -> None:
        self._task_store = task_store
        self._job_store = job_store
        self._dispute_gate = dispute_gate
        self._locks = locks
        self._event_bus = event_bus
        self._ledger_client = ledger_client
        self._config = config
        self._wakeup = asyncio.Event()
        self._ledger_backoff: dict[str, tuple[int, datetime]] = {}
        self._running = True
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        """Current auto-release configuration."""
        return {
            "enabled": self._config.enabled,
            "delay_ms": self._config.delay_ms,
            "min_amount": str(self._config.min_amount),
            "max_amount": str(self._config.max_amount),
        }

    def update_config(
        self,
        enabled: bool | None,
        delay_ms: int | None,
        min_amount: Decimal | None,
        max_amount: Decimal | None,
    ) -> dict[str, Any]:
        """
        Change auto-release settings. Omitted values keep their current setting.

        Takes effect for jobs scheduled and executed afterwards. Raises
        VALIDATION_ERROR for negative values or min_amount > max_amount.
        """
        if delay_ms is not None and delay_ms < 0:
            raise ServiceError("VALIDATION_ERROR", "delay_ms must be >= 0", 400, {})
        for field_name, value in (("min_amount", min_amount), ("max_amount", max_amount)):
            if value is not None and (not value.is_finite() or value < 0):
                raise ServiceError("VALIDATION_ERROR", f"{field_name} must be >= 0", 400, {})

        updates: dict[str, Any] = {}
        if enabled is not None:
            updates["enabled"] = enabled
        if delay_ms is not None:
            updates["delay_ms"] = delay_ms
        if min_amount is not None:
            updates["min_amount"] = min_amount
        if max_amount is not None:
            updates["max_amount"] = max_amount

        candidate = self._config.model_copy(update=updates)
        if candidate.min_amount > candidate.max_amount:
            raise ServiceError(
                "VALIDATION_ERROR", "min_amount must not exceed max_amount", 400, {}
            )

        self._config = candidate
        self._logger.info("Escrow configuration updated", extra=self.get_config())
        return self.get_config()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def handle_event(self, event: LifecycleEvent) -> None:
        """EventBus handler: schedule a release for every verified task."""
        if isinstance(event, TaskVerified):
            self.schedule_release(event.task_id)

    def schedule_release(self, task_id: str) -> dict[str, Any] | None:
        """Insert a release job due after the configured delay."""
        if not self._config.enabled:
            self._logger.info(
                "Auto-release disabled, not scheduling release", extra={"task_id": task_id}
            )
            return None

        now = datetime.now(UTC)
        due_at = now + timedelta(milliseconds=self._config.delay_ms)
        job = self._job_store.schedule(
            task_id=task_id,
            due_at=to_iso(due_at),
            trigger="verified",
            created_at=to_iso(now),
        )
        self._logger.info(
            "Escrow release scheduled",
            extra={"task_id": task_id, "job_id": job["job_id"], "due_at": job["due_at"]},
        )
        self._wakeup.set()
        return job

    async def trigger_releases(self) -> dict[str, Any]:
        """Schedule an immediate release for every verified, unpaid, undisputed task."""
        scheduled: list[str] = []
        now = now_iso()
        for task in self._task_store.list_tasks_by_statuses(AUTO_RELEASE_STATUSES):
            task_id = str(task["task_id"])
            if task["payment_released"] or self._dispute_gate.is_release_blocked(task_id):
                continue
            self._job_store.schedule(
                task_id=task_id, due_at=now, trigger="maintenance", created_at=now
            )
            scheduled.append(task_id)

        self._logger.info("Maintenance release triggered", extra={"scheduled": len(scheduled)})
        if scheduled:
            self._wakeup.set()
        return {"scheduled": len(scheduled), "task_ids": scheduled}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _escrow_amount(self, task: dict[str, Any]) -> Decimal | None:
        """Held amount: the accepted bid's amount."""
        bid_id = task["accepted_bid_id"]
        if bid_id is None:
            return None
        bid = self._task_store.get_bid(str(bid_id), str(task["task_id"]))
        if bid is None:
            return None
        amount: Decimal = bid["amount"]
        return amount

    def _auto_release_skip_reason(self, task: dict[str, Any] | None) -> str | None:
        if task is None:
            return "task_not_found"
        if not self._config.enabled:
            return "auto_release_disabled"
        if task["payment_released"]:
            return "already_released"
        if task["status"] != "verified":
            return f"status_{task['status']}"
        if self._dispute_gate.is_release_blocked(str(task["task_id"])):
            return "active_dispute"
        amount = self._escrow_amount(task)
        if amount is None:
            return "no_accepted_bid"
        if amount < self._config.min_amount or amount > self._config.max_amount:
            return "amount_out_of_bounds"
        return None

    async def execute_job(self, job: dict[str, Any]) -> str:
        """
        Run one release job. Returns the job's final state.

        A job that fails any check is marked skipped and never retried.
        """
        task_id = str(job["task_id"])
        job_id = str(job["job_id"])

        async with self._locks.hold(task_id):
            if not self._job_store.is_scheduled(job_id):
                return "finished"

            task = self._task_store.get_task(task_id)
            skip_reason = self._auto_release_skip_reason(task)
            if skip_reason is not None or task is None:
                self._job_store.finish(job_id, "skipped", str(skip_reason), now_iso())
                self._logger.info(
                    "Escrow release skipped",
                    extra={"task_id": task_id, "job_id": job_id, "reason": skip_reason},
                )
                return "skipped"

            released = await self._release(
                task,
                auto_released=True,
                arbitrator_id=None,
                allowed_statuses=AUTO_RELEASE_STATUSES,
            )
            outcome = "released" if released else "already_released"
            self._job_store.finish(
                job_id, "executed" if released else "skipped", outcome, now_iso()
            )
            return "executed" if released else "skipped"

    async def manual_release(
        self,
        task_id: str,
        arbitrator_id: str,
        reason: str,
    ) -> dict[str, Any]:
        """
        Release escrow immediately on an arbitrator's instruction.

        Error precedence: TASK_NOT_FOUND, then INVALID_STATUS when already
        released, no worker assigned, status outside completed/verified/
        disputed/resolved, or an active dispute.
        """
        if not arbitrator_id:
            raise ServiceError("VALIDATION_ERROR", "arbitrator_id must not be empty", 400, {})

        async with self._locks.hold(task_id):
            task = self._task_store.get_task(task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
            if task["payment_released"]:
                raise ServiceError("INVALID_STATUS", "Payment already released", 400, {})
            if task["worker_id"] is None:
                raise ServiceError("INVALID_STATUS", "Task has no assigned worker", 400, {})
            if task["status"] not in MANUAL_RELEASE_STATUSES:
                raise ServiceError(
                    "INVALID_STATUS",
                    f"Cannot release escrow for task in '{task['status']}' status",
                    400,
                    {"task_id": task_id, "status": task["status"]},
                )
            if self._dispute_gate.is_release_blocked(task_id):
                raise ServiceError(
                    "INVALID_STATUS",
                    "Cannot release escrow while a dispute is active",
                    400,
                    {"task_id": task_id},
                )

            released = await self._release(
                task,
                auto_released=False,
                arbitrator_id=arbitrator_id,
                allowed_statuses=MANUAL_RELEASE_STATUSES,
            )
            if not released:
                raise ServiceError("INVALID_STATUS", "Payment already released", 400, {})

            self._logger.info(
                "Escrow released manually",
                extra={"task_id": task_id, "arbitrator_id": arbitrator_id, "reason": reason},
            )
        return await self.get_escrow_status(task_id)

    async def _release(
        self,
        task: dict[str, Any],
        *,
        auto_released: bool,
        arbitrator_id: str | None,
        allowed_statuses: tuple[str, ...],
    ) -> bool:
        """Flip payment_released, then settle with the ledger. Caller holds the task lock."""
        task_id = str(task["task_id"])
        amount = self._escrow_amount(task)
        released = self._task_store.mark_payment_released(
            task_id,
            payment_reference=f"pay-{uuid.uuid4()}",
            paid_at=now_iso(),
            ledger_status="pending" if self._ledger_client is not None else None,
            allowed_statuses=allowed_statuses,
        )
        if not released:
            return False

        self._logger.info(
            "Escrow released",
            extra={
                "task_id": task_id,
                "worker_id": task["worker_id"],
                "amount": str(amount),
                "auto_released": auto_released,
            },
        )
        await self._settle_with_ledger(task_id)

        refreshed = self._task_store.get_task(task_id)
        payment_reference = refreshed["payment_reference"] if refreshed is not None else ""
        self._event_bus.publish(
            PaymentReleased(
                task_id=task_id,
                worker_id=str(task["worker_id"]),
                amount=str(amount),
                payment_reference=str(payment_reference),
                auto_released=auto_released,
                arbitrator_id=arbitrator_id,
            )
        )
        return True

    async def _settle_with_ledger(self, task_id: str) -> None:
        """
        Best-effort ledger release for a paid task. Caller holds the task lock.

        Creates the escrow entry first when acceptance could not. Success
        stores the ledger's reference and 'settled'; failure stores 'failed'
        and pushes the task's next retry back exponentially.
        """
        if self._ledger_client is None:
            return
        task = self._task_store.get_task(task_id)
        if task is None or task["ledger_status"] not in ("pending", "failed"):
            return

        try:
            reference = task["escrow_reference"]
            if reference is None:
                amount = self._escrow_amount(task)
                reference = await self._ledger_client.create_escrow_entry(
                    task_id=task_id,
                    amount=amount if amount is not None else task["budget"],
                    payer_id=str(task["requester_id"]),
                )
                self._task_store.update_task(
                    task_id, {"escrow_reference": reference}, expected_status=None
                )
            confirmation = await self._ledger_client.release_escrow_entry(
                str(reference), str(task["worker_id"])
            )
        except ServiceError as exc:
            self._task_store.update_task(task_id, {"ledger_status": "failed"}, expected_status=None)
            failures = self._ledger_backoff.get(task_id, (0, datetime.now(UTC)))[0] + 1
            delay = min(LEDGER_RETRY_BASE_SECONDS * 2 ** (failures - 1), LEDGER_RETRY_MAX_SECONDS)
            retry_at = datetime.now(UTC) + timedelta(seconds=delay)
            self._ledger_backoff[task_id] = (failures, retry_at)
            self._logger.error(
                "Ledger settlement failed",
                extra={
                    "task_id": task_id,
                    "error_code": exc.error,
                    "failures": failures,
                    "retry_at": to_iso(retry_at),
                },
            )
            return

        self._task_store.update_task(
            task_id,
            {"payment_reference": str(confirmation["reference"]), "ledger_status": "settled"},
            expected_status=None,
        )
        self._ledger_backoff.pop(task_id, None)
        self._logger.info("Ledger settlement recorded", extra={"task_id": task_id})

    async def retry_ledger_settlements(self, now: datetime | None = None) -> int:
        """
        Retry ledger writes for paid tasks left pending or failed.

        Tasks still inside their back-off window are left for a later pass.
        Returns the number settled.
        """
        if self._ledger_client is None:
            return 0
        now = now or datetime.now(UTC)
        settled = 0
        for task in self._task_store.list_ledger_retry_candidates():
            task_id = str(task["task_id"])
            backoff = self._ledger_backoff.get(task_id)
            if backoff is not None and backoff[1] > now:
                continue
            async with self._locks.hold(task_id):
                await self._settle_with_ledger(task_id)
            refreshed = self._task_store.get_task(task_id)
            if refreshed is not None and refreshed["ledger_status"] == "settled":
                settled += 1
        return settled

    async def tick(self) -> int:
        """Execute every due job. Returns jobs handled."""
        jobs = self._job_store.list_due(now_iso())
        for job in jobs:
            try:
                await self.execute_job(job)
            except Exception:
                self._logger.exception(
                    "Release job failed", extra={"job_id": job["job_id"], "task_id": job["task_id"]}
                )
        return len(jobs)

    async def _ledger_retry_loop(self) -> None:
        while self._running:
            try:
                await self.retry_ledger_settlements()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Unhandled error retrying ledger settlements")
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def run(self) -> None:
        """
        Run the scheduler loop until stopped.

        Ledger retries run in a sibling task so a slow or unreachable ledger
        never delays due release jobs.
        """
        self._logger.info(
            "Escrow scheduler starting",
            extra={"poll_interval_seconds": self._config.poll_interval_seconds},
        )
        retry_task = (
            asyncio.create_task(self._ledger_retry_loop(), name="ledger-retry")
            if self._ledger_client is not None
            else None
        )
        try:
            while self._running:
                self._wakeup.clear()
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    self._running = False
                    raise
                except Exception:
                    self._logger.exception("Unhandled error in escrow scheduler tick")
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self._config.poll_interval_seconds
                    )
        finally:
            if retry_task is not None:
                retry_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await retry_task
        self._logger.info("Escrow scheduler stopped")

    def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        self._running = False
        self._wakeup.set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_escrow_status(self, task_id: str) -> dict[str, Any]:
        """Escrow view of one task."""
        task = self._task_store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})

        amount = self._escrow_amount(task)
        held = (
            amount is not None
            and not task["payment_released"]
            and task["status"] in ("in_progress", *MANUAL_RELEASE_STATUSES)
        )
        jobs = self._job_store.list_for_task(task_id)
        scheduled = [job for job in jobs if job["state"] == "scheduled"]

        return {
            "task_id": task_id,
            "status": task["status"],
            "worker_id": task["worker_id"],
            "amount": str(amount) if amount is not None else None,
            "held": held,
            "payment_released": task["payment_released"],
            "payment_reference": task["payment_reference"],
            "escrow_reference": task["escrow_reference"],
            "ledger_status": task["ledger_status"],
            "release_scheduled": len(scheduled) > 0,
            "scheduled_release_at": scheduled[0]["due_at"] if scheduled else None,
            "released_at": task["paid_at"],
            "release_blocked": self._dispute_gate.is_release_blocked(task_id),
            "jobs": jobs,
        }

    async def list_active_escrows(self) -> dict[str, Any]:
        """Tasks whose escrow is still held, oldest first."""
        escrows: list[dict[str, Any]] = []
        for task in self._task_store.list_tasks_by_statuses(
            ("in_progress", *MANUAL_RELEASE_STATUSES)
        ):
            if task["payment_released"]:
                continue
            amount = self._escrow_amount(task)
            escrows.append(
                {
                    "task_id": task["task_id"],
                    "status": task["status"],
                    "requester_id": task["requester_id"],
                    "worker_id": task["worker_id"],
                    "amount": str(amount) if amount is not None else None,
                    "release_blocked": self._dispute_gate.is_release_blocked(
                        str(task["task_id"])
                    ),
                }
            )
        return {"escrows": escrows, "total": len(escrows)}

    async def get_stats(self) -> dict[str, Any]:
        """Locked and released totals with the share of automatic releases."""
        locked_total = Decimal(0)
        locked_count = 0
        for task in self._task_store.list_tasks_by_statuses(
            ("in_progress", *MANUAL_RELEASE_STATUSES)
        ):
            amount = self._escrow_amount(task)
            if amount is not None and not task["payment_released"]:
                locked_total += amount
                locked_count += 1

        released_total = Decimal(0)
        released_amounts: list[Decimal] = []
        for task in self._task_store.list_tasks_by_statuses(("paid",)):
            amount = self._escrow_amount(task)
            if amount is not None:
                released_total += amount
                released_amounts.append(amount)

        auto_released = self._job_store.count_executed()
        released_count = len(released_amounts)
        average = released_total / released_count if released_count else None

        return {
            "locked_count": locked_count,
            "locked_total": str(locked_total),
            "released_count": released_count,
            "released_total": str(released_total),
            "average_release_amount": str(average) if average is not None else None,
            "auto_released_count": auto_released,
            "auto_release_rate": auto_released / released_count if released_count else 0.0,
        }
