"""Task lifecycle coordination across tasks, bids, escrow and wallets."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.models import (
    ESCROW_LOCKED,
    NOTIFY_BID_ACCEPTED,
    NOTIFY_NEW_BID,
    NOTIFY_REVIEW_RECEIVED,
    NOTIFY_TASK_COMPLETED,
    NOTIFY_WORKER_ARRIVED,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_IN_PROGRESS,
)
from marketplace_service.services.money import to_amount
from marketplace_service.services.retry import retry_with_backoff

if TYPE_CHECKING:
    from marketplace_service.services.bid_store import BidStore
    from marketplace_service.services.database import Database
    from marketplace_service.services.ledger import Ledger
    from marketplace_service.services.notifier import Notifier
    from marketplace_service.services.photo_storage import PhotoStorage
    from marketplace_service.services.retry import RetryPolicy
    from marketplace_service.services.review_store import ReviewStore
    from marketplace_service.services.task_store import TaskStore

PAYOUT_DESCRIPTION = "Payment received for task completion"


def _forbidden(message: str, task_id: str) -> ServiceError:
    return ServiceError("FORBIDDEN", message, 403, {"task_id": task_id})


class LifecycleOrchestrator:
    """
    Drives a task from posting to payout.

    Each operation validates its preconditions and commits its writes
    in one database transaction, then emits notifications on a best
    effort basis. ``actor_id`` identifies the caller; when given it
    must be the owner or assigned worker the operation requires.
    """

    def __init__(
        self,
        db: Database,
        tasks: TaskStore,
        bids: BidStore,
        ledger: Ledger,
        notifier: Notifier,
        reviews: ReviewStore,
        photos: PhotoStorage,
        retry_policy: RetryPolicy,
    ) -> None:
        self._db = db
        self._tasks = tasks
        self._bids = bids
        self._ledger = ledger
        self._notifier = notifier
        self._reviews = reviews
        self._photos = photos
        self._retry_policy = retry_policy
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @staticmethod
    def _require_owner(task: dict[str, Any], actor_id: str | None) -> None:
        if actor_id is not None and actor_id != task["owner_id"]:
            raise _forbidden("Only the task owner can perform this action", task["task_id"])

    @staticmethod
    def _require_assigned_worker(task: dict[str, Any], actor_id: str | None) -> None:
        if actor_id is not None and actor_id != task["assigned_worker_id"]:
            raise _forbidden("Only the assigned worker can perform this action", task["task_id"])

    async def _check_bid_owner(self, bid_id: str, actor_id: str | None) -> None:
        if actor_id is None:
            return
        bid = await self._bids.get_bid(bid_id)
        task = await self._tasks.get_task(bid["task_id"])
        self._require_owner(task, actor_id)

    # ------------------------------------------------------------------
    # Posting and bidding
    # ------------------------------------------------------------------

    async def create_task(self, owner_id: str, details: dict[str, Any]) -> dict[str, Any]:
        """Post a new task and return it."""
        task_id = await self._tasks.create_task(owner_id, details)
        return await self._tasks.get_task(task_id)

    async def place_bid(
        self,
        task_id: str,
        worker_id: str,
        amount: object,
        message: str,
    ) -> dict[str, Any]:
        """Place a bid and tell the task owner about it."""
        bid_id = await self._bids.place_bid(task_id, worker_id, amount, message)
        bid = await self._bids.get_bid(bid_id)
        task = await self._tasks.get_task(task_id)
        await self._notifier.emit(
            task["owner_id"],
            NOTIFY_NEW_BID,
            task_id,
            "New Bid Received",
            f'You received a new bid of {bid["amount"]} for "{task["title"]}"',
        )
        return bid

    async def accept_bid(self, bid_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """
        Accept a bid under the retry policy and notify the winning worker.

        Retrying is safe: a repeated attempt re-checks that the task is
        still open and fails with TASK_NOT_OPEN instead of accepting twice.
        """
        await self._check_bid_owner(bid_id, actor_id)
        result = await retry_with_backoff(
            lambda: self._bids.accept_bid(bid_id),
            self._retry_policy,
        )
        await self._notify_bid_accepted(result["bid"], result["task"])
        return result

    async def accept_and_pay(self, bid_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """
        Lock escrow for the bid amount and accept the bid in one commit.

        Either the escrow is locked and the task is in progress, or
        neither happened.
        """
        await self._check_bid_owner(bid_id, actor_id)

        async def _accept_and_lock() -> dict[str, Any]:
            async with self._db.transaction() as tx:
                accepted = await self._bids.accept_bid(bid_id, tx=tx)
                escrow = await self._ledger.lock_escrow(
                    accepted["task"]["task_id"],
                    accepted["bid"]["amount"],
                    tx=tx,
                )
            return {**accepted, "escrow": escrow}

        result = await retry_with_backoff(_accept_and_lock, self._retry_policy)
        self._logger.info(
            "Bid accepted with payment",
            extra={"bid_id": bid_id, "task_id": result["task"]["task_id"]},
        )
        await self._notify_bid_accepted(result["bid"], result["task"])
        return result

    async def _notify_bid_accepted(self, bid: dict[str, Any], task: dict[str, Any]) -> None:
        await self._notifier.emit(
            bid["worker_id"],
            NOTIFY_BID_ACCEPTED,
            task["task_id"],
            "Bid Accepted",
            f'Your bid for "{task["title"]}" has been accepted',
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def mark_arrived(self, task_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """Assigned worker reports arrival; the owner is notified."""
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            self._require_assigned_worker(task, actor_id)
            task = await self._tasks.mark_arrived(task_id, tx=tx)
        await self._notifier.emit(
            task["owner_id"],
            NOTIFY_WORKER_ARRIVED,
            task_id,
            "Worker Arrived",
            f'The worker has arrived for "{task["title"]}"',
        )
        return task

    async def request_completion(self, task_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """Assigned worker marks the job done and asks the owner to approve."""
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            self._require_assigned_worker(task, actor_id)
            task = await self._tasks.request_completion(task_id, tx=tx)
        await self._notifier.emit(
            task["owner_id"],
            NOTIFY_TASK_COMPLETED,
            task_id,
            "Task Completed",
            f'"{task["title"]}" has been marked as completed',
        )
        return task

    async def upload_completion_photo(
        self,
        task_id: str,
        actor_id: str | None,
        filename: str,
        content: bytes,
    ) -> dict[str, Any]:
        """Store a proof-of-completion photo and attach its URL to the task."""
        task = await self._tasks.get_task(task_id)
        if task["state"] != TASK_IN_PROGRESS:
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot upload photos to a task in '{task['state']}' state",
                409,
                {"task_id": task_id, "from": task["state"]},
            )
        self._require_assigned_worker(task, actor_id)
        url = self._photos.save(task_id, filename, content)
        try:
            return await self._tasks.set_completion_photo(task_id, url)
        except Exception:
            # The task left in_progress after the check above; drop the orphaned file
            self._photos.delete(task_id, url.rsplit("/", 1)[-1])
            raise

    # ------------------------------------------------------------------
    # Completion and cancellation
    # ------------------------------------------------------------------

    async def complete_and_release_payment(
        self,
        task_id: str,
        worker_id: str | None = None,
        amount: object = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Owner approval: complete the task and pay the worker.

        In one transaction the task moves to completed, the assigned
        worker's wallet is credited, and the task's escrow (if any) is
        released. The payout defaults to the accepted bid amount, then
        the budget. The credit carries the reference ``payout:<task_id>``
        so it can never be applied twice.
        """
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            self._require_owner(task, actor_id)
            if task["assigned_worker_id"] is None:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    "Cannot complete a task without an assigned worker",
                    409,
                    {"task_id": task_id, "from": task["state"], "to": TASK_COMPLETED},
                )
            task = await self._tasks.approve_completion(task_id, tx=tx)

            assigned_worker = task["assigned_worker_id"]
            if worker_id is not None and worker_id != assigned_worker:
                raise ServiceError(
                    "INVALID_INPUT",
                    "worker_id does not match the assigned worker",
                    400,
                    {"field": "worker_id", "task_id": task_id},
                )
            if amount is not None:
                payout_amount = to_amount(amount)
            elif task["accepted_bid_amount"] is not None:
                payout_amount = task["accepted_bid_amount"]
            else:
                payout_amount = task["budget"]

            payout = await self._ledger.credit_wallet(
                assigned_worker,
                payout_amount,
                PAYOUT_DESCRIPTION,
                task_id=task_id,
                reference=f"payout:{task_id}",
                tx=tx,
            )

            escrow = await self._ledger.find_escrow(task_id, tx=tx)
            if escrow is not None:
                escrow = await self._ledger.release_escrow(task_id, tx=tx)

        if escrow is None:
            self._logger.info("Task completed without escrow", extra={"task_id": task_id})
        self._logger.info(
            "Task completed and payment released",
            extra={
                "task_id": task_id,
                "worker_id": assigned_worker,
                "amount": str(payout_amount),
            },
        )
        await self._notifier.emit(
            assigned_worker,
            NOTIFY_TASK_COMPLETED,
            task_id,
            "Payment Released",
            f'Payment of {payout_amount} for "{task["title"]}" has been released',
        )
        return {"task": task, "payout": payout, "escrow": escrow}

    async def cancel_task(self, task_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """
        Cancel an open or in-progress task.

        The owner or the assigned worker may cancel. A locked escrow is
        released in the same commit. Locking escrow never debits the
        owner's wallet, so releasing it credits no one.
        """
        async with self._db.transaction() as tx:
            task = await self._tasks.get_task(task_id, tx=tx)
            if actor_id is not None and actor_id not in (
                task["owner_id"],
                task["assigned_worker_id"],
            ):
                raise _forbidden("Only the owner or assigned worker can cancel", task_id)
            task = await self._tasks.transition_state(task_id, TASK_CANCELLED, tx=tx)

            escrow = await self._ledger.find_escrow(task_id, tx=tx)
            if escrow is not None and escrow["status"] == ESCROW_LOCKED:
                escrow = await self._ledger.release_escrow(task_id, tx=tx)

        self._logger.info(
            "Task cancelled",
            extra={"task_id": task_id, "escrow_released": escrow is not None},
        )
        return {"task": task, "escrow": escrow}

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    async def submit_review(
        self,
        task_id: str,
        reviewer_id: str,
        star_rating: object,
        text_review: object = "",
        task_specific_rating: object = None,
    ) -> dict[str, Any]:
        """Record the owner's review and tell the worker."""
        review = await self._reviews.submit_review(
            task_id,
            reviewer_id,
            star_rating,
            text_review,
            task_specific_rating,
        )
        await self._notifier.emit(
            review["worker_id"],
            NOTIFY_REVIEW_RECEIVED,
            task_id,
            "New Review",
            f"You received a {review['star_rating']}-star review",
        )
        return review

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        by_state = await self._tasks.count_by_state()
        return {"total_tasks": sum(by_state.values()), "tasks_by_state": by_state}
