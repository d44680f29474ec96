"""SQLite-backed webhook subscription and delivery log storage."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class WebhookStore:
    """SQLite-backed storage for webhook subscriptions and deliveries."""

    _SUBSCRIPTION_COLUMNS_SQL = (
        "webhook_id, owner_id, url, events, secret, active, consecutive_failures, "
        "last_delivered_at, created_at"
    )
    _DELIVERY_COLUMNS_SQL = (
        "delivery_id, webhook_id, event, url, attempts, status, last_status_code, "
        "created_at, updated_at"
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
                CREATE TABLE IF NOT EXISTS webhooks (
                    webhook_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    events TEXT NOT NULL,
                    secret TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0,
                    last_delivered_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_webhooks_owner ON webhooks(owner_id);

                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    webhook_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    url TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    last_status_code INTEGER,
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_deliveries_webhook
                    ON webhook_deliveries(webhook_id);

                CREATE INDEX IF NOT EXISTS idx_deliveries_status
                    ON webhook_deliveries(status);
                """
            )
            self._db.commit()

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "webhook_id": str(row["webhook_id"]),
            "owner_id": str(row["owner_id"]),
            "url": str(row["url"]),
            "events": json.loads(row["events"]),
            "secret": str(row["secret"]),
            "active": bool(row["active"]),
            "consecutive_failures": int(row["consecutive_failures"]),
            "last_delivered_at": row["last_delivered_at"],
            "created_at": str(row["created_at"]),
        }

    @staticmethod
    def _row_to_delivery(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "delivery_id": str(row["delivery_id"]),
            "webhook_id": str(row["webhook_id"]),
            "event": str(row["event"]),
            "url": str(row["url"]),
            "attempts": int(row["attempts"]),
            "status": str(row["status"]),
            "last_status_code": row["last_status_code"],
            "created_at": str(row["created_at"]),
            "updated_at": str(row["updated_at"]),
        }

    def insert_subscription(self, subscription: dict[str, Any]) -> None:
        """Insert a new active subscription."""
        with self._lock:
            self._db.execute(
                f"INSERT INTO webhooks ({self._SUBSCRIPTION_COLUMNS_SQL}) "  # nosec B608
                "VALUES (?, ?, ?, ?, ?, 1, 0, NULL, ?)",
                (
                    subscription["webhook_id"],
                    subscription["owner_id"],
                    subscription["url"],
                    json.dumps(sorted(subscription["events"])),
                    subscription["secret"],
                    subscription["created_at"],
                ),
            )
            self._db.commit()

    def get_subscription(self, webhook_id: str) -> dict[str, Any] | None:
        """Fetch a subscription by ID (including its secret)."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {self._SUBSCRIPTION_COLUMNS_SQL} FROM webhooks "  # nosec B608
                "WHERE webhook_id = ?",
                (webhook_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_subscription(row)

    def list_by_owner(self, owner_id: str) -> list[dict[str, Any]]:
        """All subscriptions of an owner, oldest first."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {self._SUBSCRIPTION_COLUMNS_SQL} FROM webhooks "  # nosec B608
                "WHERE owner_id = ? ORDER BY created_at, webhook_id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def list_active(self) -> list[dict[str, Any]]:
        """All active subscriptions."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {self._SUBSCRIPTION_COLUMNS_SQL} FROM webhooks "  # nosec B608
                "WHERE active = 1 ORDER BY created_at, webhook_id"
            ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def delete_subscription(self, webhook_id: str) -> bool:
        """
        Delete a subscription. Its delivery log is kept as an audit record.

        Deliveries still pending are closed as failed so they are not picked
        up again on restart.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "DELETE FROM webhooks WHERE webhook_id = ?", (webhook_id,)
                )
                self._db.execute(
                    "UPDATE webhook_deliveries SET status = 'failed' "
                    "WHERE webhook_id = ? AND status = 'pending'",
                    (webhook_id,),
                )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return cursor.rowcount == 1

    def set_active(self, webhook_id: str, active: bool) -> None:
        """Activate or deactivate a subscription. Activation resets the failure counter."""
        with self._lock:
            if active:
                self._db.execute(
                    "UPDATE webhooks SET active = 1, consecutive_failures = 0 "
                    "WHERE webhook_id = ?",
                    (webhook_id,),
                )
            else:
                self._db.execute(
                    "UPDATE webhooks SET active = 0 WHERE webhook_id = ?", (webhook_id,)
                )
            self._db.commit()

    def record_success(self, webhook_id: str, delivered_at: str) -> None:
        """Reset the failure counter after a successful delivery."""
        with self._lock:
            self._db.execute(
                "UPDATE webhooks SET consecutive_failures = 0, last_delivered_at = ? "
                "WHERE webhook_id = ?",
                (delivered_at, webhook_id),
            )
            self._db.commit()

    def record_failure(self, webhook_id: str, threshold: int) -> dict[str, Any] | None:
        """
        Count one exhausted delivery against an active subscription.

        The counter increment and the deactivation at ``threshold`` happen in
        one statement. An inactive subscription is left as it is, so late
        failures from other workers never push the counter past the
        threshold. Returns the current subscription.
        """
        with self._lock:
            self._db.execute(
                """
                UPDATE webhooks
                SET consecutive_failures = consecutive_failures + 1,
                    active = CASE WHEN consecutive_failures + 1 >= ? THEN 0 ELSE active END
                WHERE webhook_id = ? AND active = 1
                """,
                (threshold, webhook_id),
            )
            self._db.commit()
        return self.get_subscription(webhook_id)

    def insert_delivery(self, delivery: dict[str, Any]) -> None:
        """Append a pending delivery record together with the event payload."""
        with self._lock:
            self._db.execute(
                "INSERT INTO webhook_deliveries "
                f"({self._DELIVERY_COLUMNS_SQL}, payload) "  # nosec B608
                "VALUES (?, ?, ?, ?, 0, 'pending', NULL, ?, ?, ?)",
                (
                    delivery["delivery_id"],
                    delivery["webhook_id"],
                    delivery["event"],
                    delivery["url"],
                    delivery["created_at"],
                    delivery["created_at"],
                    json.dumps(delivery.get("payload", {})),
                ),
            )
            self._db.commit()

    def list_pending_deliveries(
        self, exclude_events: tuple[str, ...] = ()
    ) -> list[dict[str, Any]]:
        """
        Deliveries not yet finished, oldest first, with their stored payload.

        Used on startup to re-enqueue work interrupted by a shutdown or crash.
        """
        query = (
            f"SELECT {self._DELIVERY_COLUMNS_SQL}, payload FROM webhook_deliveries "  # nosec B608
            "WHERE status = 'pending'"
        )
        params: list[Any] = []
        if exclude_events:
            query += f" AND event NOT IN ({', '.join('?' for _ in exclude_events)})"
            params.extend(exclude_events)
        query += " ORDER BY created_at, delivery_id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        deliveries = []
        for row in rows:
            delivery = self._row_to_delivery(row)
            delivery["payload"] = json.loads(row["payload"])
            deliveries.append(delivery)
        return deliveries

    def update_delivery(
        self,
        delivery_id: str,
        *,
        attempts: int,
        status: str,
        last_status_code: int | None,
        updated_at: str,
    ) -> None:
        """Record the outcome of delivery attempts."""
        with self._lock:
            self._db.execute(
                """
                UPDATE webhook_deliveries
                SET attempts = ?, status = ?, last_status_code = ?, updated_at = ?
                WHERE delivery_id = ?
                """,
                (attempts, status, last_status_code, updated_at, delivery_id),
            )
            self._db.commit()

    def get_delivery(self, delivery_id: str) -> dict[str, Any] | None:
        """Fetch a delivery record by ID."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {self._DELIVERY_COLUMNS_SQL} FROM webhook_deliveries "  # nosec B608
                "WHERE delivery_id = ?",
                (delivery_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_delivery(row)

    def list_deliveries(self, webhook_id: str) -> list[dict[str, Any]]:
        """Delivery log of a subscription, newest first."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {self._DELIVERY_COLUMNS_SQL} FROM webhook_deliveries "  # nosec B608
                "WHERE webhook_id = ? ORDER BY created_at DESC, delivery_id",
                (webhook_id,),
            ).fetchall()
        return [self._row_to_delivery(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
