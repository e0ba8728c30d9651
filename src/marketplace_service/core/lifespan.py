"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from marketplace_service.config import get_safe_config, get_settings
from marketplace_service.core.state import init_app_state
from marketplace_service.logging import get_logger, setup_logging
from marketplace_service.services.bid_store import BidStore
from marketplace_service.services.database import Database
from marketplace_service.services.ledger import Ledger
from marketplace_service.services.lifecycle_orchestrator import LifecycleOrchestrator
from marketplace_service.services.notifier import Notifier
from marketplace_service.services.photo_storage import PhotoStorage
from marketplace_service.services.retry import RetryPolicy
from marketplace_service.services.review_store import ReviewStore
from marketplace_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db = Database(
        db_path=settings.database.path,
        timeout_seconds=settings.database.timeout_seconds,
    )
    await db.connect()
    state.db = db

    task_store = TaskStore(db)
    bid_store = BidStore(db, task_store)
    ledger = Ledger(db, platform_fee=settings.payments.platform_fee)
    notifier = Notifier(db)
    review_store = ReviewStore(db, task_store)
    photo_storage = PhotoStorage(
        photo_path=settings.storage.photo_path,
        public_base_url=settings.storage.public_base_url,
        max_photo_size=settings.storage.max_photo_size,
    )
    retry_policy = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay_seconds=settings.retry.base_delay_seconds,
        max_delay_seconds=settings.retry.max_delay_seconds,
    )

    state.task_store = task_store
    state.bid_store = bid_store
    state.ledger = ledger
    state.notifier = notifier
    state.review_store = review_store
    state.photo_storage = photo_storage
    state.orchestrator = LifecycleOrchestrator(
        db=db,
        tasks=task_store,
        bids=bid_store,
        ledger=ledger,
        notifier=notifier,
        reviews=review_store,
        photos=photo_storage,
        retry_policy=retry_policy,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "photo_path": settings.storage.photo_path,
            "platform_fee": str(settings.payments.platform_fee),
        },
    )
    logger.debug("Effective configuration", extra={"config": get_safe_config()})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await db.close()
