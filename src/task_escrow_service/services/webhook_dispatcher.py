"""At-least-once webhook fan-out with signed payloads and bounded workers."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.events import SUBSCRIBABLE_EVENTS, WILDCARD_EVENT, WebhookTest
from task_escrow_service.logging import get_logger
from task_escrow_service.services.timestamps import now_iso

if TYPE_CHECKING:
    from task_escrow_service.events import LifecycleEvent
    from task_escrow_service.services.webhook_store import WebhookStore

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"


class DeliveryFailure(Exception):
    """A single webhook POST did not return a 2xx response."""

    def __init__(self, message: str, status_code: int | None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class DeliveryJob:
    """One queued delivery of one event to one subscription."""

    delivery_id: str
    webhook_id: str
    event: str
    payload: dict[str, Any]
    attempts_made: int = 0


def sign_body(secret: str, body: bytes) -> str:
    """Return the signature header value for a request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _public_view(subscription: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in subscription.items() if key != "secret"}


class WebhookDispatcher:
    """
    Delivers lifecycle events to subscribed URLs.

    ``publish`` only appends a pending delivery record and enqueues it; a
    fixed pool of asyncio workers performs the HTTP POSTs. A delivery makes
    up to ``max_attempts`` tries with exponential backoff. Exhausting them
    counts one failure against the subscription, which is deactivated once
    ``failure_threshold`` consecutive deliveries have failed.
    """

    def __init__(
        self,
        store: WebhookStore,
        workers: int,
        max_attempts: int,
        backoff_base_seconds: float,
        timeout_seconds: float,
        failure_threshold: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._worker_count = workers
        self._max_attempts = max_attempts
        self._backoff_base_seconds = backoff_base_seconds
        self._failure_threshold = failure_threshold
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue()
        self._queued_ids: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    def _require_owned(self, owner_id: str, webhook_id: str) -> dict[str, Any]:
        subscription = self._store.get_subscription(webhook_id)
        if subscription is None or subscription["owner_id"] != owner_id:
            raise ServiceError(
                "WEBHOOK_NOT_FOUND", "Webhook not found", 404, {"webhook_id": webhook_id}
            )
        return subscription

    async def register(self, owner_id: str, url: str, events: list[str]) -> dict[str, Any]:
        """
        Register a subscription. The returned secret is never shown again.

        Raises VALIDATION_ERROR for a non-http(s) URL, an empty event list or
        an unknown event name.
        """
        if not owner_id:
            raise ServiceError("VALIDATION_ERROR", "owner_id must not be empty", 400, {})
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ServiceError("VALIDATION_ERROR", "url must be an http(s) URL", 400, {})
        if len(events) == 0:
            raise ServiceError("VALIDATION_ERROR", "At least one event required", 400, {})
        unknown = [e for e in events if e != WILDCARD_EVENT and e not in SUBSCRIBABLE_EVENTS]
        if unknown:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Invalid event type: {', '.join(unknown)}",
                400,
                {"allowed": sorted(SUBSCRIBABLE_EVENTS | {WILDCARD_EVENT})},
            )

        subscription = {
            "webhook_id": f"wh-{uuid.uuid4()}",
            "owner_id": owner_id,
            "url": url,
            "events": sorted(set(events)),
            "secret": secrets.token_hex(32),
            "created_at": now_iso(),
        }
        self._store.insert_subscription(subscription)
        self._logger.info(
            "Webhook registered",
            extra={"webhook_id": subscription["webhook_id"], "owner_id": owner_id, "url": url},
        )

        stored = self._store.get_subscription(str(subscription["webhook_id"]))
        if stored is None:
            msg = "Failed to load newly registered webhook"
            raise RuntimeError(msg)
        return stored

    async def list_webhooks(self, owner_id: str) -> dict[str, Any]:
        """An owner's subscriptions without their secrets."""
        return {"webhooks": [_public_view(s) for s in self._store.list_by_owner(owner_id)]}

    async def delete(self, owner_id: str, webhook_id: str) -> dict[str, Any]:
        """Delete an owner's subscription."""
        self._require_owned(owner_id, webhook_id)
        self._store.delete_subscription(webhook_id)
        self._logger.info("Webhook deleted", extra={"webhook_id": webhook_id})
        return {"webhook_id": webhook_id, "deleted": True}

    async def set_active(self, owner_id: str, webhook_id: str, active: bool) -> dict[str, Any]:
        """Activate or deactivate a subscription. Activation resets the failure counter."""
        self._require_owned(owner_id, webhook_id)
        self._store.set_active(webhook_id, active)
        self._logger.info(
            "Webhook active flag changed", extra={"webhook_id": webhook_id, "active": active}
        )
        return _public_view(self._require_owned(owner_id, webhook_id))

    async def list_deliveries(self, owner_id: str, webhook_id: str) -> dict[str, Any]:
        """Delivery log of one subscription, newest first."""
        self._require_owned(owner_id, webhook_id)
        return {"webhook_id": webhook_id, "deliveries": self._store.list_deliveries(webhook_id)}

    async def test(self, owner_id: str, webhook_id: str) -> dict[str, Any]:
        """
        Send one ``webhook.test`` event synchronously.

        The attempt is recorded in the delivery log but does not touch the
        subscription's failure counter or active flag.
        """
        subscription = self._require_owned(owner_id, webhook_id)
        event = WebhookTest(webhook_id=webhook_id)
        delivery_id = self._new_delivery(subscription, event.name, event.payload())

        status_code: int | None = None
        error: str | None = None
        try:
            status_code = await self._attempt(
                subscription, delivery_id, event.name, event.payload()
            )
            success = True
        except DeliveryFailure as exc:
            status_code = exc.status_code
            error = str(exc)
            success = False

        self._store.update_delivery(
            delivery_id,
            attempts=1,
            status="success" if success else "failed",
            last_status_code=status_code,
            updated_at=now_iso(),
        )
        self._logger.info(
            "Webhook test sent",
            extra={"webhook_id": webhook_id, "success": success, "status_code": status_code},
        )
        return {
            "webhook_id": webhook_id,
            "delivery_id": delivery_id,
            "success": success,
            "status_code": status_code,
            "error": error,
        }

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def handle_event(self, event: LifecycleEvent) -> None:
        """EventBus handler."""
        self.publish(event)

    def publish(self, event: LifecycleEvent) -> int:
        """
        Enqueue the event for every active matching subscription.

        Never blocks on the network. Returns the number of deliveries enqueued.
        """
        payload = event.payload()
        enqueued = 0
        for subscription in self._store.list_active():
            events = subscription["events"]
            if event.name not in events and WILDCARD_EVENT not in events:
                continue
            delivery_id = self._new_delivery(subscription, event.name, payload)
            self._enqueue(
                DeliveryJob(
                    delivery_id=delivery_id,
                    webhook_id=str(subscription["webhook_id"]),
                    event=event.name,
                    payload=payload,
                )
            )
            enqueued += 1
        return enqueued

    def _enqueue(self, job: DeliveryJob) -> None:
        self._queued_ids.add(job.delivery_id)
        self._queue.put_nowait(job)

    def _new_delivery(
        self, subscription: dict[str, Any], event_name: str, payload: dict[str, Any]
    ) -> str:
        delivery_id = f"dlv-{uuid.uuid4()}"
        self._store.insert_delivery(
            {
                "delivery_id": delivery_id,
                "webhook_id": subscription["webhook_id"],
                "event": event_name,
                "url": subscription["url"],
                "payload": payload,
                "created_at": now_iso(),
            }
        )
        return delivery_id

    async def _attempt(
        self,
        subscription: dict[str, Any],
        delivery_id: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> int:
        """POST once. Returns the status code or raises DeliveryFailure."""
        body = json.dumps(
            {
                "event": event_name,
                "timestamp": int(time.time() * 1000),
                "deliveryId": delivery_id,
                "payload": payload,
            },
            separators=(",", ":"),
        ).encode()
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event_name,
            DELIVERY_HEADER: delivery_id,
            SIGNATURE_HEADER: sign_body(str(subscription["secret"]), body),
        }
        try:
            response = await self._client.post(
                str(subscription["url"]), content=body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Request failed: {exc}", None) from exc

        if not 200 <= response.status_code < 300:
            raise DeliveryFailure(
                f"Endpoint returned status {response.status_code}", response.status_code
            )
        return response.status_code

    async def deliver(self, job: DeliveryJob) -> bool:
        """
        Run the remaining attempts for one delivery. Returns True on success.

        The log row is updated after every attempt, so while a retry is
        backing off it shows the attempts made so far and the last status.
        A job recovered after a restart resumes from its recorded attempts.
        """
        subscription = self._store.get_subscription(job.webhook_id)
        if subscription is None or not subscription["active"]:
            self._store.update_delivery(
                job.delivery_id,
                attempts=job.attempts_made,
                status="failed",
                last_status_code=None,
                updated_at=now_iso(),
            )
            return False

        last_status_code: int | None = None
        for attempt in range(job.attempts_made + 1, self._max_attempts + 1):
            try:
                last_status_code = await self._attempt(
                    subscription, job.delivery_id, job.event, job.payload
                )
            except DeliveryFailure as exc:
                last_status_code = exc.status_code
                self._logger.warning(
                    "Webhook delivery attempt failed",
                    extra={
                        "delivery_id": job.delivery_id,
                        "webhook_id": job.webhook_id,
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                if attempt < self._max_attempts:
                    self._store.update_delivery(
                        job.delivery_id,
                        attempts=attempt,
                        status="pending",
                        last_status_code=last_status_code,
                        updated_at=now_iso(),
                    )
                    await asyncio.sleep(self._backoff_base_seconds * 2 ** (attempt - 1))
                continue

            delivered_at = now_iso()
            self._store.update_delivery(
                job.delivery_id,
                attempts=attempt,
                status="success",
                last_status_code=last_status_code,
                updated_at=delivered_at,
            )
            self._store.record_success(job.webhook_id, delivered_at)
            return True

        self._store.update_delivery(
            job.delivery_id,
            attempts=self._max_attempts,
            status="failed",
            last_status_code=last_status_code,
            updated_at=now_iso(),
        )
        updated = self._store.record_failure(job.webhook_id, self._failure_threshold)
        if updated is not None and not updated["active"]:
            self._logger.warning(
                "Webhook deactivated after consecutive failures",
                extra={
                    "webhook_id": job.webhook_id,
                    "consecutive_failures": updated["consecutive_failures"],
                },
            )
        return False

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            except Exception:
                self._logger.exception(
                    "Unhandled error delivering webhook", extra={"delivery_id": job.delivery_id}
                )
            finally:
                self._queued_ids.discard(job.delivery_id)
                self._queue.task_done()

    @property
    def queued(self) -> int:
        """Deliveries waiting for a free worker."""
        return self._queue.qsize()

    def recover_pending(self) -> int:
        """
        Re-enqueue deliveries left pending by an earlier process.

        Deliveries already in this process's queue are skipped. Synchronous
        test deliveries are never replayed. Returns the number re-enqueued.
        """
        recovered = 0
        for row in self._store.list_pending_deliveries(exclude_events=(WebhookTest.name,)):
            if row["delivery_id"] in self._queued_ids:
                continue
            self._enqueue(
                DeliveryJob(
                    delivery_id=str(row["delivery_id"]),
                    webhook_id=str(row["webhook_id"]),
                    event=str(row["event"]),
                    payload=row["payload"],
                    attempts_made=int(row["attempts"]),
                )
            )
            recovered += 1
        if recovered:
            self._logger.info("Re-enqueued pending webhook deliveries", extra={"count": recovered})
        return recovered

    def start(self) -> None:
        """Re-enqueue interrupted deliveries and start the worker pool."""
        self.recover_pending()
        for index in range(self._worker_count):
            self._workers.append(
                asyncio.create_task(self._worker(), name=f"webhook-worker-{index}")
            )

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker pool. Unfinished deliveries stay pending until the next start."""
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._workers.clear()

    async def close(self) -> None:
        """Stop workers and close the HTTP client."""
        await self.stop()
        await self._client.aclose()
