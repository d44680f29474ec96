"""SQLite-backed task and bid storage."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateBidError(Exception):
    """Raised when attempting to insert a duplicate bid for a task/bidder pair."""


class TaskStore:
    """SQLite-backed storage for tasks and bids."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "requester_id",
        "title",
        "description",
        "budget",
        "deadline",
        "required_capabilities",
        "status",
        "bid_count",
        "worker_id",
        "accepted_bid_id",
        "delivery_reference",
        "payment_released",
        "payment_reference",
        "dispute_id",
        "escrow_reference",
        "ledger_status",
        "cancel_reason",
        "created_at",
        "assigned_at",
        "completed_at",
        "verified_at",
        "paid_at",
        "cancelled_at",
        "expired_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        f"INSERT INTO tasks ({_TASK_COLUMNS_SQL}) "  # nosec B608
        f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})"
    )
    _TASK_SELECT_BASE_SQL = f"SELECT {_TASK_COLUMNS_SQL} FROM tasks"  # nosec B608
    _BID_COLUMNS_SQL = (
        "bid_id, task_id, bidder_id, amount, estimated_duration_hours, message, status, created_at"
    )

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
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    budget TEXT NOT NULL,
                    deadline TEXT,
                    required_capabilities TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'posted',
                    bid_count INTEGER NOT NULL DEFAULT 0,
                    worker_id TEXT,
                    accepted_bid_id TEXT,
                    delivery_reference TEXT,
                    payment_released INTEGER NOT NULL DEFAULT 0,
                    payment_reference TEXT,
                    dispute_id TEXT,
                    escrow_reference TEXT,
                    ledger_status TEXT,
                    cancel_reason TEXT,
                    created_at TEXT NOT NULL,
                    assigned_at TEXT,
                    completed_at TEXT,
                    verified_at TEXT,
                    paid_at TEXT,
                    cancelled_at TEXT,
                    expired_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    bidder_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    estimated_duration_hours INTEGER,
                    message TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    UNIQUE(task_id, bidder_id)
                );
                """
            )
            self._db.commit()

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["budget"] = Decimal(row["budget"])
        task["required_capabilities"] = json.loads(row["required_capabilities"])
        task["payment_released"] = bool(row["payment_released"])
        return task

    @staticmethod
    def _row_to_bid(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "bid_id": row["bid_id"],
            "task_id": row["task_id"],
            "bidder_id": row["bidder_id"],
            "amount": Decimal(row["amount"]),
            "estimated_duration_hours": row["estimated_duration_hours"],
            "message": row["message"],
            "status": row["status"],
            "accepted": row["status"] == "accepted",
            "created_at": row["created_at"],
        }

    @staticmethod
    def _to_db_value(column: str, value: Any) -> Any:
        if column == "required_capabilities":
            return json.dumps(value)
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, bool):
            return int(value)
        return value

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(
            self._to_db_value(column, task_data[column]) for column in self._TASK_COLUMNS
        )

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(self._TASK_INSERT_SQL, values)
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateTaskError(
                        f"A task with task_id={task_data['task_id']} already exists"
                    ) from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._lock:
            cursor = self._db.execute(self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?", (task_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [
            self._to_db_value(column, value) for column, value in updates.items()
        ]

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            cursor = self._db.execute(query, params)
            self._db.commit()
        return int(cursor.rowcount)

    def list_tasks(
        self,
        status: str | None,
        requester_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if requester_id is not None:
            clauses.append("requester_id = ?")
            params.append(requester_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)
        elif offset is not None:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_tasks_by_statuses(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        """List all tasks whose status is one of statuses, oldest first."""
        placeholders = ", ".join("?" for _ in statuses)
        query = (
            self._TASK_SELECT_BASE_SQL
            + f" WHERE status IN ({placeholders}) ORDER BY created_at"  # nosec B608
        )
        with self._lock:
            rows = self._db.execute(query, statuses).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_ledger_retry_candidates(self) -> list[dict[str, Any]]:
        """Paid tasks whose ledger write is still pending or failed."""
        query = (
            self._TASK_SELECT_BASE_SQL
            + " WHERE payment_released = 1 AND ledger_status IN ('pending', 'failed')"
            + " ORDER BY paid_at"
        )
        with self._lock:
            rows = self._db.execute(query).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def mark_payment_released(
        self,
        task_id: str,
        *,
        payment_reference: str,
        paid_at: str,
        ledger_status: str | None,
        allowed_statuses: tuple[str, ...],
    ) -> bool:
        """
        Atomically flip payment_released from 0 to 1 and move the task to paid.

        Returns False when the payment was already released or the task is
        not in one of allowed_statuses; nothing is written in that case.
        """
        placeholders = ", ".join("?" for _ in allowed_statuses)
        query = (
            "UPDATE tasks SET payment_released = 1, status = 'paid', payment_reference = ?, "
            "paid_at = ?, ledger_status = ? "
            "WHERE task_id = ? AND payment_released = 0 "
            f"AND status IN ({placeholders})"  # nosec B608
        )
        params: list[object] = [payment_reference, paid_at, ledger_status, task_id]
        params.extend(allowed_statuses)
        with self._lock:
            cursor = self._db.execute(query, params)
            self._db.commit()
        return cursor.rowcount == 1

    def insert_bid(self, bid_data: dict[str, Any]) -> None:
        """Insert a bid and increment the associated task bid_count atomically."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    f"INSERT INTO bids ({self._BID_COLUMNS_SQL}) "  # nosec B608
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        bid_data["bid_id"],
                        bid_data["task_id"],
                        bid_data["bidder_id"],
                        str(bid_data["amount"]),
                        bid_data["estimated_duration_hours"],
                        bid_data["message"],
                        "pending",
                        bid_data["created_at"],
                    ),
                )
                self._db.execute(
                    "UPDATE tasks SET bid_count = bid_count + 1 WHERE task_id = ?",
                    (bid_data["task_id"],),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateBidError("This agent already bid on this task") from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_bid(self, bid_id: str, task_id: str) -> dict[str, Any] | None:
        """Fetch a bid by bid_id and task_id."""
        with self._lock:
            cursor = self._db.execute(
                f"SELECT {self._BID_COLUMNS_SQL} FROM bids "  # nosec B608
                "WHERE bid_id = ? AND task_id = ?",
                (bid_id, task_id),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_bid(row)

    def get_bids_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all bids for a task sorted by submission time."""
        with self._lock:
            cursor = self._db.execute(
                f"SELECT {self._BID_COLUMNS_SQL} FROM bids "  # nosec B608
                "WHERE task_id = ? ORDER BY created_at, bid_id",
                (task_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_bid(row) for row in rows]

    def accept_bid(self, task_id: str, bid_id: str, worker_id: str, assigned_at: str) -> bool:
        """
        Accept one bid and reject its siblings in a single transaction.

        The task moves posted -> in_progress in the same transaction, so no
        reader can observe a winner without an assigned task. Returns False
        (and writes nothing) if the task is no longer posted.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "UPDATE tasks SET status = 'in_progress', worker_id = ?, "
                    "accepted_bid_id = ?, assigned_at = ? "
                    "WHERE task_id = ? AND status = 'posted'",
                    (worker_id, bid_id, assigned_at, task_id),
                )
                if cursor.rowcount == 0:
                    self._db.execute("ROLLBACK")
                    return False
                self._db.execute(
                    "UPDATE bids SET status = CASE WHEN bid_id = ? THEN 'accepted' "
                    "ELSE 'rejected' END WHERE task_id = ?",
                    (bid_id, task_id),
                )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return True

    def delete_terminal_tasks(self, statuses: tuple[str, ...], older_than: str) -> list[str]:
        """
        Hard-delete terminal tasks whose last activity precedes older_than.

        Paid tasks whose ledger write has not settled are kept so the retry
        loop can still reach them. Bids of deleted tasks are removed with
        them. Returns deleted task ids.
        """
        placeholders = ", ".join("?" for _ in statuses)
        select_sql = (
            "SELECT task_id FROM tasks "  # nosec B608
            f"WHERE status IN ({placeholders}) "
            "AND COALESCE(paid_at, expired_at, cancelled_at, created_at) < ? "
            "AND (payment_released = 0 OR ledger_status IS NULL OR ledger_status = 'settled')"
        )
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                rows = self._db.execute(select_sql, (*statuses, older_than)).fetchall()
                task_ids = [str(row["task_id"]) for row in rows]
                for task_id in task_ids:
                    self._db.execute("DELETE FROM bids WHERE task_id = ?", (task_id,))
                    self._db.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return task_ids

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
