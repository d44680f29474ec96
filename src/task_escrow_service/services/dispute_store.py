"""SQLite-backed dispute and evidence storage."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from pathlib import Path
from threading import RLock
from typing import Any

from task_escrow_service.services.timestamps import now_iso


class DuplicateDisputeError(Exception):
    """Raised when a task already has a dispute that is not resolved."""


class DisputeStore:
    """SQLite-backed dispute storage with thread-safe transactions."""

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    initiator_id TEXT NOT NULL,
                    respondent_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    resolution TEXT,
                    resolution_reason TEXT,
                    arbitrator_id TEXT,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_one_active
                    ON disputes(task_id) WHERE status != 'resolved';

                CREATE TABLE IF NOT EXISTS evidence (
                    evidence_id TEXT PRIMARY KEY,
                    dispute_id TEXT NOT NULL REFERENCES disputes(dispute_id),
                    party_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    content TEXT NOT NULL,
                    submitted_at TEXT NOT NULL
                );
                """
            )
            self._db.commit()

    @staticmethod
    def _new_dispute_id() -> str:
        return f"disp-{uuid.uuid4()}"

    @staticmethod
    def _new_evidence_id() -> str:
        return f"ev-{uuid.uuid4()}"

    @staticmethod
    def _row_to_dispute(row: sqlite3.Row, evidence: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "dispute_id": str(row["dispute_id"]),
            "task_id": str(row["task_id"]),
            "initiator_id": str(row["initiator_id"]),
            "respondent_id": str(row["respondent_id"]),
            "reason": str(row["reason"]),
            "status": str(row["status"]),
            "resolution": row["resolution"],
            "resolution_reason": row["resolution_reason"],
            "arbitrator_id": row["arbitrator_id"],
            "evidence": evidence,
            "created_at": str(row["created_at"]),
            "resolved_at": row["resolved_at"],
        }

    def _load_evidence(self, dispute_id: str) -> list[dict[str, Any]]:
        cursor = self._db.execute(
            """
            SELECT party_id, kind, content, submitted_at
            FROM evidence
            WHERE dispute_id = ?
            ORDER BY submitted_at, evidence_id
            """,
            (dispute_id,),
        )
        return [
            {
                "party_id": str(row["party_id"]),
                "kind": str(row["kind"]),
                "content": str(row["content"]),
                "submitted_at": str(row["submitted_at"]),
            }
            for row in cursor.fetchall()
        ]

    def insert_dispute(
        self,
        task_id: str,
        initiator_id: str,
        respondent_id: str,
        reason: str,
    ) -> dict[str, Any]:
        """Create a new open dispute and return the created record."""
        dispute_id = self._new_dispute_id()
        created_at = now_iso()

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    """
                    INSERT INTO disputes (
                        dispute_id, task_id, initiator_id, respondent_id, reason,
                        status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'open', ?)
                    """,
                    (dispute_id, task_id, initiator_id, respondent_id, reason, created_at),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateDisputeError(
                        f"An active dispute already exists for task_id={task_id}"
                    ) from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

        dispute = self.get_dispute(dispute_id)
        if dispute is None:
            msg = "Failed to load newly created dispute"
            raise RuntimeError(msg)
        return dispute

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Get dispute details including evidence."""
        with self._lock:
            cursor = self._db.execute("SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            evidence = self._load_evidence(dispute_id)
        return self._row_to_dispute(row, evidence)

    def get_active_dispute_for_task(self, task_id: str) -> dict[str, Any] | None:
        """Return the task's dispute that is not yet resolved, if any."""
        with self._lock:
            cursor = self._db.execute(
                "SELECT * FROM disputes WHERE task_id = ? AND status != 'resolved'",
                (task_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            evidence = self._load_evidence(str(row["dispute_id"]))
        return self._row_to_dispute(row, evidence)

    def has_active_dispute(self, task_id: str) -> bool:
        """Return True if the task has an open or under-review dispute."""
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM disputes WHERE task_id = ? AND status != 'resolved' LIMIT 1",
                (task_id,),
            ).fetchone()
        return row is not None

    def list_disputes(
        self,
        status: str | None,
        task_id: str | None,
        initiator_id: str | None,
    ) -> list[dict[str, Any]]:
        """List disputes with optional filters, newest first."""
        query = "SELECT * FROM disputes"
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if initiator_id is not None:
            clauses.append("initiator_id = ?")
            params.append(initiator_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, dispute_id"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
            return [
                self._row_to_dispute(row, self._load_evidence(str(row["dispute_id"])))
                for row in rows
            ]

    def list_agent_disputes(self, agent_id: str) -> list[dict[str, Any]]:
        """List disputes where agent_id is initiator or respondent."""
        with self._lock:
            rows = self._db.execute(
                """
                SELECT * FROM disputes
                WHERE initiator_id = ? OR respondent_id = ?
                ORDER BY created_at DESC, dispute_id
                """,
                (agent_id, agent_id),
            ).fetchall()
            return [
                self._row_to_dispute(row, self._load_evidence(str(row["dispute_id"])))
                for row in rows
            ]

    def add_evidence(self, dispute_id: str, party_id: str, kind: str, content: str) -> None:
        """Append an evidence item to a dispute."""
        with self._lock:
            self._db.execute(
                """
                INSERT INTO evidence (
                    evidence_id, dispute_id, party_id, kind, content, submitted_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self._new_evidence_id(), dispute_id, party_id, kind, content, now_iso()),
            )
            self._db.commit()

    def mark_under_review(self, dispute_id: str, arbitrator_id: str) -> bool:
        """Move an open dispute to under_review. Returns False if it was not open."""
        with self._lock:
            cursor = self._db.execute(
                """
                UPDATE disputes SET status = 'under_review', arbitrator_id = ?
                WHERE dispute_id = ? AND status = 'open'
                """,
                (arbitrator_id, dispute_id),
            )
            self._db.commit()
        return cursor.rowcount == 1

    def resolve(
        self,
        dispute_id: str,
        arbitrator_id: str,
        resolution: str,
        resolution_reason: str | None,
    ) -> str | None:
        """
        Record the outcome of a dispute that is not yet resolved.

        Returns the resolved_at timestamp, or None if the dispute was
        already resolved.
        """
        resolved_at = now_iso()
        with self._lock:
            cursor = self._db.execute(
                """
                UPDATE disputes
                SET status = 'resolved', resolution = ?, resolution_reason = ?,
                    arbitrator_id = ?, resolved_at = ?
                WHERE dispute_id = ? AND status != 'resolved'
                """,
                (resolution, resolution_reason, arbitrator_id, resolved_at, dispute_id),
            )
            self._db.commit()
        if cursor.rowcount == 0:
            return None
        return resolved_at

    def count_by_status(self) -> dict[str, int]:
        """Count disputes grouped by status."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) FROM disputes GROUP BY status"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def count_by_resolution(self) -> dict[str, int]:
        """Count resolved disputes grouped by resolution outcome."""
        with self._lock:
            rows = self._db.execute(
                "SELECT resolution, COUNT(*) FROM disputes "
                "WHERE resolution IS NOT NULL GROUP BY resolution"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def list_resolution_times(self) -> list[tuple[str, str]]:
        """Return (created_at, resolved_at) pairs for every resolved dispute."""
        with self._lock:
            rows = self._db.execute(
                "SELECT created_at, resolved_at FROM disputes WHERE resolved_at IS NOT NULL"
            ).fetchall()
        return [(str(row[0]), str(row[1])) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
