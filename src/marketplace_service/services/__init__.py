"""Service layer components."""

from marketplace_service.services.bid_store import BidStore
from marketplace_service.services.database import Database, Transaction
from marketplace_service.services.ledger import Ledger
from marketplace_service.services.lifecycle_orchestrator import LifecycleOrchestrator
from marketplace_service.services.notifier import Notifier
from marketplace_service.services.photo_storage import PhotoStorage
from marketplace_service.services.retry import RetryPolicy, retry_with_backoff
from marketplace_service.services.review_store import ReviewStore
from marketplace_service.services.task_store import TaskStore

__all__ = [
    "BidStore",
    "Database",
    "Ledger",
    "LifecycleOrchestrator",
    "Notifier",
    "PhotoStorage",
    "RetryPolicy",
    "ReviewStore",
    "TaskStore",
    "Transaction",
    "retry_with_backoff",
]
