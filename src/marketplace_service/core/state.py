"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketplace_service.services.bid_store import BidStore
    from marketplace_service.services.database import Database
    from marketplace_service.services.ledger import Ledger
    from marketplace_service.services.lifecycle_orchestrator import LifecycleOrchestrator
    from marketplace_service.services.notifier import Notifier
    from marketplace_service.services.photo_storage import PhotoStorage
    from marketplace_service.services.review_store import ReviewStore
    from marketplace_service.services.task_store import TaskStore


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    db: Database | None = None
    task_store: TaskStore | None = None
    bid_store: BidStore | None = None
    ledger: Ledger | None = None
    notifier: Notifier | None = None
    review_store: ReviewStore | None = None
    photo_storage: PhotoStorage | None = None
    orchestrator: LifecycleOrchestrator | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
