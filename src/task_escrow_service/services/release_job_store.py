"""SQLite-backed storage for scheduled escrow release jobs."""

from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path
from threading import RLock
from typing import Any


class ReleaseJobStore:
    """
    Durable release jobs.

    A job is inserted in state ``scheduled`` and moves exactly once to
    ``executed`` or ``skipped``. Jobs survive restarts; the scheduler loop
    picks up any scheduled job whose due_at has passed.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS release_jobs (
                    job_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    due_at TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'scheduled',
                    trigger TEXT NOT NULL,
                    outcome TEXT,
                    created_at TEXT NOT NULL,
                    executed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_release_jobs_due
                    ON release_jobs(state, due_at);
                """
            )
            self._db.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "job_id": str(row["job_id"]),
            "task_id": str(row["task_id"]),
            "due_at": str(row["due_at"]),
            "state": str(row["state"]),
            "trigger": str(row["trigger"]),
            "outcome": row["outcome"],
            "created_at": str(row["created_at"]),
            "executed_at": row["executed_at"],
        }

    def schedule(self, task_id: str, due_at: str, trigger: str, created_at: str) -> dict[str, Any]:
        """Insert a scheduled job and return it."""
        job = {
            "job_id": f"rel-{uuid.uuid4()}",
            "task_id": task_id,
            "due_at": due_at,
            "state": "scheduled",
            "trigger": trigger,
            "outcome": None,
            "created_at": created_at,
            "executed_at": None,
        }
        with self._lock:
            self._db.execute(
                """
                INSERT INTO release_jobs (job_id, task_id, due_at, state, trigger, created_at)
                VALUES (?, ?, ?, 'scheduled', ?, ?)
                """,
                (job["job_id"], task_id, due_at, trigger, created_at),
            )
            self._db.commit()
        return job

    def list_due(self, now: str) -> list[dict[str, Any]]:
        """Scheduled jobs whose due_at is at or before now, earliest first."""
        with self._lock:
            rows = self._db.execute(
                """
                SELECT * FROM release_jobs
                WHERE state = 'scheduled' AND due_at <= ?
                ORDER BY due_at, job_id
                """,
                (now,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """All jobs for a task, oldest first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM release_jobs WHERE task_id = ? ORDER BY created_at, job_id",
                (task_id,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def is_scheduled(self, job_id: str) -> bool:
        """Return True if the job exists and has not run yet."""
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM release_jobs WHERE job_id = ? AND state = 'scheduled'",
                (job_id,),
            ).fetchone()
        return row is not None

    def count_executed(self) -> int:
        """Number of jobs that released a payment."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM release_jobs WHERE state = 'executed'"
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def finish(self, job_id: str, state: str, outcome: str, executed_at: str) -> bool:
        """Move a scheduled job to executed or skipped. Returns False if already finished."""
        if state not in ("executed", "skipped"):
            msg = f"Invalid terminal job state: {state}"
            raise ValueError(msg)
        with self._lock:
            cursor = self._db.execute(
                """
                UPDATE release_jobs SET state = ?, outcome = ?, executed_at = ?
                WHERE job_id = ? AND state = 'scheduled'
                """,
                (state, outcome, executed_at, job_id),
            )
            self._db.commit()
        return cursor.rowcount == 1

    def delete_for_tasks(self, task_ids: list[str]) -> int:
        """Delete every job belonging to the given tasks."""
        if len(task_ids) == 0:
            return 0
        placeholders = ", ".join("?" for _ in task_ids)
        with self._lock:
            cursor = self._db.execute(
                f"DELETE FROM release_jobs WHERE task_id IN ({placeholders})",  # nosec B608
                task_ids,
            )
            self._db.commit()
        return int(cursor.rowcount)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
