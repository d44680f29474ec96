"""Application lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.clients.ledger_client import LedgerClient
from task_escrow_service.clients.reputation_client import ReputationClient
from task_escrow_service.config import get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.events import EventBus
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.dispute_manager import DisputeManager
from task_escrow_service.services.dispute_store import DisputeStore
from task_escrow_service.services.escrow_scheduler import EscrowScheduler
from task_escrow_service.services.expiry_sweeper import ExpirySweeper
from task_escrow_service.services.release_job_store import ReleaseJobStore
from task_escrow_service.services.task_locks import TaskLocks
from task_escrow_service.services.task_manager import TaskManager
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.webhook_dispatcher import WebhookDispatcher
from task_escrow_service.services.webhook_store import WebhookStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    db_path = settings.database.path

    event_bus = EventBus()
    task_locks = TaskLocks()
    state.event_bus = event_bus
    state.task_locks = task_locks

    # External collaborators (the ledger is optional)
    ledger_client: LedgerClient | None = None
    if settings.ledger.enabled:
        ledger_client = LedgerClient(
            base_url=settings.ledger.base_url,
            create_path=settings.ledger.create_path,
            release_path=settings.ledger.release_path,
            timeout_seconds=settings.ledger.timeout_seconds,
        )
    state.ledger_client = ledger_client

    reputation_client = ReputationClient(
        base_url=settings.reputation.base_url,
        score_path=settings.reputation.score_path,
        timeout_seconds=settings.reputation.timeout_seconds,
    )
    state.reputation_client = reputation_client

    # Stores share one SQLite file, each on its own connection
    task_store = TaskStore(db_path=db_path)
    dispute_store = DisputeStore(db_path=db_path)
    job_store = ReleaseJobStore(db_path=db_path)
    webhook_store = WebhookStore(db_path=db_path)

    task_manager = TaskManager(
        store=task_store,
        locks=task_locks,
        event_bus=event_bus,
        ledger_client=ledger_client,
        reputation_client=reputation_client,
        min_reputation=settings.bidding.min_reputation,
    )
    state.task_manager = task_manager

    dispute_manager = DisputeManager(
        store=dispute_store,
        task_store=task_store,
        locks=task_locks,
        event_bus=event_bus,
    )
    state.dispute_manager = dispute_manager

    escrow_scheduler = EscrowScheduler(
        task_store=task_store,
        job_store=job_store,
        dispute_gate=dispute_manager,
        locks=task_locks,
        event_bus=event_bus,
        ledger_client=ledger_client,
        config=settings.escrow,
    )
    dispute_manager.set_escrow_scheduler(escrow_scheduler)
    state.escrow_scheduler = escrow_scheduler

    webhook_dispatcher = WebhookDispatcher(
        store=webhook_store,
        workers=settings.webhooks.workers,
        max_attempts=settings.webhooks.max_attempts,
        backoff_base_seconds=settings.webhooks.backoff_base_seconds,
        timeout_seconds=settings.webhooks.timeout_seconds,
        failure_threshold=settings.webhooks.failure_threshold,
    )
    state.webhook_dispatcher = webhook_dispatcher

    expiry_sweeper = ExpirySweeper(
        store=task_store,
        job_store=job_store,
        locks=task_locks,
        event_bus=event_bus,
        interval_seconds=settings.sweeper.interval_seconds,
        stale_after_seconds=settings.sweeper.stale_after_seconds,
        retention_seconds=settings.sweeper.retention_seconds,
        retention_interval_seconds=settings.sweeper.retention_interval_seconds,
    )
    state.expiry_sweeper = expiry_sweeper

    event_bus.subscribe(escrow_scheduler.handle_event)
    event_bus.subscribe(webhook_dispatcher.handle_event)

    # Background work
    webhook_dispatcher.start()
    state.background_tasks.append(
        asyncio.create_task(escrow_scheduler.run(), name="escrow-scheduler")
    )
    state.background_tasks.append(
        asyncio.create_task(expiry_sweeper.run(), name="expiry-sweeper")
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "ledger_enabled": settings.ledger.enabled,
            "auto_release_enabled": settings.escrow.enabled,
            "webhook_workers": settings.webhooks.workers,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    escrow_scheduler.stop()
    expiry_sweeper.stop()
    for task in state.background_tasks:
        task.cancel()
    for task in state.background_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    state.background_tasks.clear()

    await webhook_dispatcher.close()
    if ledger_client is not None:
        await ledger_client.close()
    await reputation_client.close()

    task_store.close()
    dispute_store.close()
    job_store.close()
    webhook_store.close()
