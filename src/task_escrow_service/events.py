"""
Lifecycle events emitted by the task, dispute and escrow components.

Each event kind is its own model carrying only the fields relevant to it.
The ``name`` class attribute is the wire name used for webhook subscriptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ConfigDict

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable


class LifecycleEvent(BaseModel):
    """Base class for all lifecycle events."""

    model_config = ConfigDict(extra="forbid", frozen=True)
    name: ClassVar[str]

    def payload(self) -> dict[str, Any]:
        """Return the JSON-ready event payload."""
        return self.model_dump(mode="json")


class TaskCreated(LifecycleEvent):
    name: ClassVar[str] = "task.created"
    task_id: str
    requester_id: str
    title: str
    budget: str
    deadline: str | None


class BidPlaced(LifecycleEvent):
    name: ClassVar[str] = "task.bid"
    task_id: str
    bid_id: str
    bidder_id: str
    amount: str


class TaskAssigned(LifecycleEvent):
    name: ClassVar[str] = "task.assigned"
    task_id: str
    bid_id: str
    worker_id: str
    amount: str


class TaskCompleted(LifecycleEvent):
    name: ClassVar[str] = "task.completed"
    task_id: str
    worker_id: str
    delivery_reference: str


class TaskVerified(LifecycleEvent):
    name: ClassVar[str] = "task.verified"
    task_id: str
    worker_id: str


class TaskCancelled(LifecycleEvent):
    name: ClassVar[str] = "task.cancelled"
    task_id: str
    requester_id: str
    reason: str


class DisputeOpened(LifecycleEvent):
    name: ClassVar[str] = "dispute.opened"
    dispute_id: str
    task_id: str
    initiator_id: str
    respondent_id: str


class DisputeResolved(LifecycleEvent):
    name: ClassVar[str] = "dispute.resolved"
    dispute_id: str
    task_id: str
    arbitrator_id: str
    resolution: str


class PaymentReleased(LifecycleEvent):
    name: ClassVar[str] = "payment.released"
    task_id: str
    worker_id: str
    amount: str
    payment_reference: str
    auto_released: bool
    arbitrator_id: str | None = None


class WebhookTest(LifecycleEvent):
    name: ClassVar[str] = "webhook.test"
    webhook_id: str


SUBSCRIBABLE_EVENTS: frozenset[str] = frozenset(
    {
        TaskCreated.name,
        BidPlaced.name,
        TaskAssigned.name,
        TaskCompleted.name,
        TaskVerified.name,
        TaskCancelled.name,
        DisputeOpened.name,
        DisputeResolved.name,
        PaymentReleased.name,
    }
)

WILDCARD_EVENT = "*"


class EventBus:
    """
    In-process fan-out of lifecycle events to registered handlers.

    Handlers run synchronously and must not block. A failing handler is
    logged and never propagates into the operation that published the event.
    """

    def __init__(self) -> None:
        self._handlers: list[Callable[[LifecycleEvent], None]] = []
        self._logger = get_logger(__name__)

    def subscribe(self, handler: Callable[[LifecycleEvent], None]) -> None:
        """Register a handler for every published event."""
        self._handlers.append(handler)

    def publish(self, event: LifecycleEvent) -> None:
        """Hand the event to every handler."""
        for handler in self._handlers:
            try:
                handler(event)
            except Exception:
                self._logger.exception(
                    "Event handler failed",
                    extra={"event": event.name, "handler": repr(handler)},
                )
