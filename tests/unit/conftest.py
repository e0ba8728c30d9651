"""Unit test fixtures: cache reset plus stores over a temporary database."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from marketplace_service.config import clear_settings_cache
from marketplace_service.core.state import reset_app_state
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
    from pathlib import Path

PLATFORM_FEE = Decimal("20.00")


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    """Connected database in a temporary directory."""
    database = Database(db_path=str(tmp_path / "marketplace.db"), timeout_seconds=5.0)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def task_store(db: Database) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def bid_store(db: Database, task_store: TaskStore) -> BidStore:
    return BidStore(db, task_store)


@pytest.fixture
def ledger(db: Database) -> Ledger:
    return Ledger(db, platform_fee=PLATFORM_FEE)


@pytest.fixture
def notifier(db: Database) -> Notifier:
    return Notifier(db)


@pytest.fixture
def review_store(db: Database, task_store: TaskStore) -> ReviewStore:
    return ReviewStore(db, task_store)


@pytest.fixture
def photo_storage(tmp_path: Path) -> PhotoStorage:
    return PhotoStorage(
        photo_path=str(tmp_path / "photos"),
        public_base_url="http://photos.test",
        max_photo_size=1024,
    )


@pytest.fixture
def orchestrator(
    db: Database,
    task_store: TaskStore,
    bid_store: BidStore,
    ledger: Ledger,
    notifier: Notifier,
    review_store: ReviewStore,
    photo_storage: PhotoStorage,
) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(
        db=db,
        tasks=task_store,
        bids=bid_store,
        ledger=ledger,
        notifier=notifier,
        reviews=review_store,
        photos=photo_storage,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0),
    )
