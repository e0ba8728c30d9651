"""Domain vocabulary: task states, bid and escrow statuses, categories."""

from __future__ import annotations

# Task states
TASK_OPEN = "open"
TASK_IN_PROGRESS = "in_progress"
TASK_COMPLETED = "completed"
TASK_CANCELLED = "cancelled"

TASK_STATES: frozenset[str] = frozenset(
    {TASK_OPEN, TASK_IN_PROGRESS, TASK_COMPLETED, TASK_CANCELLED}
)

# Allowed state changes; completed and cancelled are terminal.
VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    TASK_OPEN: frozenset({TASK_IN_PROGRESS, TASK_CANCELLED}),
    TASK_IN_PROGRESS: frozenset({TASK_COMPLETED, TASK_CANCELLED}),
    TASK_COMPLETED: frozenset(),
    TASK_CANCELLED: frozenset(),
}

# Bid statuses
BID_PENDING = "pending"
BID_ACCEPTED = "accepted"
BID_REJECTED = "rejected"

# Escrow statuses
ESCROW_LOCKED = "locked"
ESCROW_RELEASED = "released"

# Wallet transaction types
TX_CREDIT = "credit"
TX_DEBIT = "debit"

TASK_CATEGORIES: frozenset[str] = frozenset(
    {
        "cleaning",
        "repair",
        "delivery",
        "plumbing",
        "electrical",
        "painting",
        "gardening",
        "moving",
        "assembly",
        "installation",
        "other",
    }
)

EQUIPMENT_PROVIDERS: frozenset[str] = frozenset({"user", "worker"})

# Notification kinds
NOTIFY_NEW_BID = "new_bid"
NOTIFY_BID_ACCEPTED = "bid_accepted"
NOTIFY_TASK_COMPLETED = "task_completed"
NOTIFY_WORKER_ARRIVED = "worker_arrived"
NOTIFY_REVIEW_RECEIVED = "review_received"


def can_transition(current: str, new: str) -> bool:
    """Return True if the task state machine allows ``current -> new``."""
    return new in VALID_TRANSITIONS.get(current, frozenset())
