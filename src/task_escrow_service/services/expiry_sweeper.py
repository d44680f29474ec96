"""Periodic expiry of unassigned tasks and retention cleanup of terminal ones."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_escrow_service.events import TaskCancelled
from task_escrow_service.logging import get_logger
from task_escrow_service.services.timestamps import parse_iso, to_iso

if TYPE_CHECKING:
    from task_escrow_service.events import EventBus
    from task_escrow_service.services.release_job_store import ReleaseJobStore
    from task_escrow_service.services.task_locks import TaskLocks
    from task_escrow_service.services.task_store import TaskStore

DEADLINE_EXPIRED = "deadline_expired"
STALE_NO_BIDS = "stale_no_bids"
RETAINED_STATUSES: tuple[str, ...] = ("expired", "paid", "cancelled")


class ExpirySweeper:
    """
    Expires posted tasks nobody will take.

    A posted task expires when its deadline has passed, or, without a
    deadline, when it has sat without a single bid for longer than
    ``stale_after_seconds``. Only posted tasks are examined; work that was
    already assigned is never expired here.
    """

    def __init__(
        self,
        store: TaskStore,
        job_store: ReleaseJobStore,
        locks: TaskLocks,
        event_bus: EventBus,
        interval_seconds: float,
        stale_after_seconds: int,
        retention_seconds: int,
        retention_interval_seconds: float,
    ) -> None:
        self._store = store
        self._job_store = job_store
        self._locks = locks
        self._event_bus = event_bus
        self._interval_seconds = interval_seconds
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._retention = timedelta(seconds=retention_seconds)
        self._retention_interval = timedelta(seconds=retention_interval_seconds)
        self._last_cleanup: datetime | None = None
        self._running = True
        self._logger = get_logger(__name__)

    def _expiry_reason(self, task: dict[str, Any], now: datetime) -> str | None:
        if task["deadline"] is not None:
            if parse_iso(str(task["deadline"])) <= now:
                return DEADLINE_EXPIRED
            return None
        created_at = parse_iso(str(task["created_at"]))
        if int(task["bid_count"]) == 0 and created_at + self._stale_after <= now:
            return STALE_NO_BIDS
        return None

    async def sweep(self, now: datetime | None = None) -> list[dict[str, str]]:
        """Expire every eligible posted task. Returns the expired (task_id, reason) pairs."""
        current = now if now is not None else datetime.now(UTC)
        expired: list[dict[str, str]] = []

        for candidate in self._store.list_tasks_by_statuses(("posted",)):
            if self._expiry_reason(candidate, current) is None:
                continue
            task_id = str(candidate["task_id"])
            async with self._locks.hold(task_id):
                task = self._store.get_task(task_id)
                if task is None or task["status"] != "posted":
                    continue
                reason = self._expiry_reason(task, current)
                if reason is None:
                    continue
                changed = self._store.update_task(
                    task_id,
                    {"status": "expired", "expired_at": to_iso(current), "cancel_reason": reason},
                    expected_status="posted",
                )
                if changed == 0:
                    continue

                self._logger.info("Task expired", extra={"task_id": task_id, "reason": reason})
                self._event_bus.publish(
                    TaskCancelled(
                        task_id=task_id,
                        requester_id=str(task["requester_id"]),
                        reason=reason,
                    )
                )
                expired.append({"task_id": task_id, "reason": reason})

        return expired

    async def cleanup(self, now: datetime | None = None) -> list[str]:
        """Hard-delete terminal tasks older than the retention window."""
        current = now if now is not None else datetime.now(UTC)
        cutoff = to_iso(current - self._retention)
        deleted = self._store.delete_terminal_tasks(RETAINED_STATUSES, cutoff)
        self._job_store.delete_for_tasks(deleted)
        self._last_cleanup = current
        if deleted:
            self._logger.info("Retention cleanup removed tasks", extra={"deleted": len(deleted)})
        return deleted

    async def tick(self, now: datetime | None = None) -> None:
        """One sweeper cycle: expiry, and cleanup when its interval has elapsed."""
        current = now if now is not None else datetime.now(UTC)
        await self.sweep(current)
        if self._last_cleanup is None or current - self._last_cleanup >= self._retention_interval:
            await self.cleanup(current)

    async def run(self) -> None:
        """Run the sweeper loop until stopped."""
        self._logger.info(
            "Expiry sweeper starting", extra={"interval_seconds": self._interval_seconds}
        )
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                self._running = False
                raise
            except Exception:
                self._logger.exception("Unhandled error in expiry sweeper cycle")
            await asyncio.sleep(self._interval_seconds)
        self._logger.info("Expiry sweeper stopped")

    def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        self._running = False
