"""Unit tests for the task lifecycle orchestrator."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.models import (
    BID_ACCEPTED,
    BID_REJECTED,
    ESCROW_LOCKED,
    ESCROW_RELEASED,
    NOTIFY_BID_ACCEPTED,
    NOTIFY_NEW_BID,
    NOTIFY_REVIEW_RECEIVED,
    NOTIFY_TASK_COMPLETED,
    NOTIFY_WORKER_ARRIVED,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_IN_PROGRESS,
    TASK_OPEN,
)
from marketplace_service.services.lifecycle_orchestrator import PAYOUT_DESCRIPTION
from tests.helpers import OTHER_WORKER_ID, OWNER_ID, WORKER_ID, task_details

if TYPE_CHECKING:
    from pathlib import Path

    from marketplace_service.services.bid_store import BidStore
    from marketplace_service.services.database import Database
    from marketplace_service.services.ledger import Ledger
    from marketplace_service.services.lifecycle_orchestrator import LifecycleOrchestrator
    from marketplace_service.services.notifier import Notifier
    from marketplace_service.services.task_store import TaskStore


async def _assigned_task(
    orchestrator: LifecycleOrchestrator,
    *,
    pay: bool = False,
) -> tuple[str, str]:
    task = await orchestrator.create_task(OWNER_ID, task_details())
    bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "I can do it")
    if pay:
        await orchestrator.accept_and_pay(bid["bid_id"], actor_id=OWNER_ID)
    else:
        await orchestrator.accept_bid(bid["bid_id"], actor_id=OWNER_ID)
    return task["task_id"], bid["bid_id"]


@pytest.mark.unit
class TestHappyPath:
    """Posting, bidding, acceptance, completion and payout."""

    async def test_full_lifecycle(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
        task_store: TaskStore,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        assert task["state"] == TASK_OPEN

        bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "Tomorrow 10am")
        accepted = await orchestrator.accept_bid(bid["bid_id"], actor_id=OWNER_ID)
        assert accepted["task"]["state"] == TASK_IN_PROGRESS
        assert accepted["bid"]["status"] == BID_ACCEPTED

        await orchestrator.mark_arrived(task["task_id"], actor_id=WORKER_ID)
        await orchestrator.request_completion(task["task_id"], actor_id=WORKER_ID)

        result = await orchestrator.complete_and_release_payment(
            task["task_id"],
            WORKER_ID,
            450,
            actor_id=OWNER_ID,
        )

        assert result["task"]["state"] == TASK_COMPLETED
        assert result["payout"]["amount"] == Decimal("450.00")
        assert result["payout"]["description"] == PAYOUT_DESCRIPTION
        assert result["payout"]["reference"] == f"payout:{task['task_id']}"
        assert result["escrow"] is None
        assert await ledger.get_balance(WORKER_ID) == Decimal("450.00")
        assert (await task_store.get_task(task["task_id"]))["state"] == TASK_COMPLETED

    async def test_accept_and_pay_locks_escrow(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "Ready")

        result = await orchestrator.accept_and_pay(bid["bid_id"], actor_id=OWNER_ID)

        assert result["task"]["state"] == TASK_IN_PROGRESS
        assert result["escrow"]["status"] == ESCROW_LOCKED
        assert result["escrow"]["total"] == Decimal("470.00")
        assert (await ledger.get_escrow(task["task_id"]))["amount"] == Decimal("450.00")

    async def test_completion_releases_escrow_and_pays_bid_amount(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator, pay=True)

        result = await orchestrator.complete_and_release_payment(task_id, actor_id=OWNER_ID)

        assert result["escrow"]["status"] == ESCROW_RELEASED
        assert result["payout"]["amount"] == Decimal("450.00")
        assert await ledger.get_balance(WORKER_ID) == Decimal("450.00")

    async def test_payout_falls_back_to_budget(
        self,
        orchestrator: LifecycleOrchestrator,
        task_store: TaskStore,
    ) -> None:
        task_id = await task_store.create_task(OWNER_ID, task_details())
        await task_store.assign_worker(task_id, WORKER_ID)

        result = await orchestrator.complete_and_release_payment(task_id)
        assert result["payout"]["amount"] == Decimal("500.00")


@pytest.mark.unit
class TestCompletionFailures:
    """Completion must be all-or-nothing."""

    async def test_completing_twice_does_not_pay_twice(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        await orchestrator.complete_and_release_payment(task_id, actor_id=OWNER_ID)

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.complete_and_release_payment(task_id, actor_id=OWNER_ID)

        assert exc_info.value.error == "INVALID_TRANSITION"
        wallet = await ledger.get_wallet(WORKER_ID)
        assert wallet["balance"] == Decimal("450.00")
        assert len(wallet["transactions"]) == 1

    async def test_open_task_cannot_be_completed(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.complete_and_release_payment(task["task_id"], WORKER_ID, 450)

        assert exc_info.value.error == "INVALID_TRANSITION"
        assert await ledger.get_balance(WORKER_ID) == Decimal("0.00")

    async def test_in_progress_task_without_worker_cannot_be_completed(
        self,
        orchestrator: LifecycleOrchestrator,
        task_store: TaskStore,
        db: Database,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        await db.execute(
            "UPDATE tasks SET state = ? WHERE task_id = ?",
            (TASK_IN_PROGRESS, task["task_id"]),
        )

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.complete_and_release_payment(task["task_id"], actor_id=OWNER_ID)

        assert exc_info.value.error == "INVALID_TRANSITION"
        assert exc_info.value.status_code == 409
        assert (await task_store.get_task(task["task_id"]))["state"] == TASK_IN_PROGRESS

    async def test_wrong_worker_rolls_back(
        self,
        orchestrator: LifecycleOrchestrator,
        task_store: TaskStore,
        ledger: Ledger,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.complete_and_release_payment(task_id, OTHER_WORKER_ID, 450)

        assert exc_info.value.error == "INVALID_INPUT"
        assert (await task_store.get_task(task_id))["state"] == TASK_IN_PROGRESS
        assert await ledger.get_balance(OTHER_WORKER_ID) == Decimal("0.00")

    async def test_only_owner_can_approve(self, orchestrator: LifecycleOrchestrator) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.complete_and_release_payment(task_id, actor_id=WORKER_ID)
        assert exc_info.value.error == "FORBIDDEN"

    async def test_failed_credit_leaves_task_in_progress(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
        task_store: TaskStore,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        ledger.credit_wallet = AsyncMock(  # type: ignore[method-assign]
            side_effect=ServiceError("COMMIT_FAILED", "disk full", 409),
        )

        with pytest.raises(ServiceError):
            await orchestrator.complete_and_release_payment(task_id, actor_id=OWNER_ID)

        assert (await task_store.get_task(task_id))["state"] == TASK_IN_PROGRESS


@pytest.mark.unit
class TestAuthorization:
    """Actor checks on lifecycle operations."""

    async def test_only_owner_accepts(self, orchestrator: LifecycleOrchestrator) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "Ready")

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.accept_bid(bid["bid_id"], actor_id=WORKER_ID)
        assert exc_info.value.error == "FORBIDDEN"

    async def test_only_assigned_worker_marks_arrival(
        self,
        orchestrator: LifecycleOrchestrator,
        task_store: TaskStore,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.mark_arrived(task_id, actor_id=OTHER_WORKER_ID)
        assert exc_info.value.error == "FORBIDDEN"
        assert (await task_store.get_task(task_id))["worker_arrived"] is False

    async def test_stranger_cannot_cancel(self, orchestrator: LifecycleOrchestrator) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.cancel_task(task["task_id"], actor_id=WORKER_ID)
        assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
class TestCancellation:
    """Cancelling tasks and releasing escrow."""

    async def test_cancel_open_task(self, orchestrator: LifecycleOrchestrator) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())

        result = await orchestrator.cancel_task(task["task_id"], actor_id=OWNER_ID)

        assert result["task"]["state"] == TASK_CANCELLED
        assert result["escrow"] is None

    async def test_cancel_paid_task_releases_escrow(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator, pay=True)

        result = await orchestrator.cancel_task(task_id, actor_id=WORKER_ID)

        assert result["task"]["state"] == TASK_CANCELLED
        assert result["task"]["assigned_worker_id"] == WORKER_ID
        assert result["escrow"]["status"] == ESCROW_RELEASED
        assert (await ledger.get_escrow(task_id))["status"] == ESCROW_RELEASED

    async def test_cancel_after_payment_leaves_owner_balance_unchanged(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        await ledger.credit_wallet(OWNER_ID, 100, "Top up")
        before = await ledger.get_balance(OWNER_ID)
        task_id, _ = await _assigned_task(orchestrator, pay=True)

        await orchestrator.cancel_task(task_id, actor_id=OWNER_ID)

        assert await ledger.get_balance(OWNER_ID) == before == Decimal("100.00")
        assert await ledger.get_balance(WORKER_ID) == Decimal("0")
        with pytest.raises(ServiceError) as exc_info:
            await ledger.debit_wallet(OWNER_ID, 101, "Withdrawal")
        assert exc_info.value.error == "INSUFFICIENT_BALANCE"

    async def test_cancelled_task_cannot_be_cancelled_again(
        self,
        orchestrator: LifecycleOrchestrator,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        await orchestrator.cancel_task(task["task_id"])

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.cancel_task(task["task_id"])
        assert exc_info.value.error == "INVALID_TRANSITION"


@pytest.mark.unit
class TestNotifications:
    """Events recorded for the other party."""

    async def test_lifecycle_notifications(
        self,
        orchestrator: LifecycleOrchestrator,
        notifier: Notifier,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        await orchestrator.mark_arrived(task_id, actor_id=WORKER_ID)
        await orchestrator.request_completion(task_id, actor_id=WORKER_ID)

        owner_kinds = [n["kind"] for n in await notifier.list_for_user(OWNER_ID)]
        worker_notes = await notifier.list_for_user(WORKER_ID)

        assert owner_kinds == [NOTIFY_TASK_COMPLETED, NOTIFY_WORKER_ARRIVED, NOTIFY_NEW_BID]
        assert [n["kind"] for n in worker_notes] == [NOTIFY_BID_ACCEPTED]
        assert worker_notes[0]["title"] == "Bid Accepted"
        assert worker_notes[0]["message"] == (
            'Your bid for "Fix leaking kitchen sink" has been accepted'
        )
        assert worker_notes[0]["related_task_id"] == task_id

    async def test_review_notifies_worker(
        self,
        orchestrator: LifecycleOrchestrator,
        notifier: Notifier,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        await orchestrator.complete_and_release_payment(task_id, actor_id=OWNER_ID)

        review = await orchestrator.submit_review(task_id, OWNER_ID, 5, "Great job")

        assert review["worker_id"] == WORKER_ID
        kinds = [n["kind"] for n in await notifier.list_for_user(WORKER_ID)]
        assert kinds[0] == NOTIFY_REVIEW_RECEIVED

    async def test_notification_failure_does_not_undo_acceptance(
        self,
        orchestrator: LifecycleOrchestrator,
        notifier: Notifier,
        bid_store: BidStore,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "Ready")
        notifier.emit = AsyncMock(return_value=False)  # type: ignore[method-assign]

        result = await orchestrator.accept_bid(bid["bid_id"])

        assert result["task"]["state"] == TASK_IN_PROGRESS
        assert (await bid_store.get_bid(bid["bid_id"]))["status"] == BID_ACCEPTED
        notifier.emit.assert_awaited_once()


@pytest.mark.unit
class TestRetry:
    """Transient failures during acceptance are retried."""

    async def test_accept_retries_commit_failures(
        self,
        orchestrator: LifecycleOrchestrator,
        bid_store: BidStore,
    ) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        bid = await orchestrator.place_bid(task["task_id"], WORKER_ID, 450, "Ready")

        real_accept = bid_store.accept_bid
        attempts = 0

        async def _flaky_accept(bid_id: str) -> dict:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ServiceError("COMMIT_FAILED", "busy", 409)
            return await real_accept(bid_id)

        bid_store.accept_bid = _flaky_accept  # type: ignore[method-assign]

        result = await orchestrator.accept_bid(bid["bid_id"])

        assert result["task"]["state"] == TASK_IN_PROGRESS
        assert attempts == 2


@pytest.mark.unit
class TestPhotosAndStats:
    """Completion photos and task statistics."""

    async def test_upload_photo_sets_url(self, orchestrator: LifecycleOrchestrator) -> None:
        task_id, _ = await _assigned_task(orchestrator)

        task = await orchestrator.upload_completion_photo(
            task_id,
            WORKER_ID,
            "done.png",
            b"\x89PNG data",
        )

        assert task["completion_photo_url"].startswith(f"http://photos.test/photos/{task_id}/")
        assert task["completion_photo_url"].endswith(".png")

    async def test_photo_removed_when_task_leaves_in_progress(
        self,
        orchestrator: LifecycleOrchestrator,
        task_store: TaskStore,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        task_id, _ = await _assigned_task(orchestrator)
        attach_photo = task_store.set_completion_photo

        async def _cancel_then_attach(target_id: str, url: str) -> dict[str, Any]:
            await task_store.transition_state(target_id, TASK_CANCELLED)
            return await attach_photo(target_id, url)

        monkeypatch.setattr(task_store, "set_completion_photo", _cancel_then_attach)

        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.upload_completion_photo(task_id, WORKER_ID, "done.png", b"png")

        assert exc_info.value.error == "INVALID_TRANSITION"
        assert list((tmp_path / "photos" / task_id).iterdir()) == []
        assert (await task_store.get_task(task_id))["completion_photo_url"] is None

    async def test_upload_requires_in_progress(self, orchestrator: LifecycleOrchestrator) -> None:
        task = await orchestrator.create_task(OWNER_ID, task_details())
        with pytest.raises(ServiceError) as exc_info:
            await orchestrator.upload_completion_photo(task["task_id"], WORKER_ID, "a.jpg", b"x")
        assert exc_info.value.error == "INVALID_TRANSITION"

    async def test_get_stats(self, orchestrator: LifecycleOrchestrator) -> None:
        await _assigned_task(orchestrator)
        await orchestrator.create_task(OWNER_ID, task_details())

        stats = await orchestrator.get_stats()

        assert stats == {
            "total_tasks": 2,
            "tasks_by_state": {TASK_OPEN: 1, TASK_IN_PROGRESS: 1},
        }


@pytest.mark.unit
class TestEndToEndScenarios:
    """Owner and two workers through the whole marketplace flow."""

    async def _two_bids(
        self,
        orchestrator: LifecycleOrchestrator,
    ) -> tuple[str, str, str]:
        task = await orchestrator.create_task(OWNER_ID, task_details(budget=1000))
        bid_a = await orchestrator.place_bid(task["task_id"], WORKER_ID, 800, "Worker A")
        bid_b = await orchestrator.place_bid(task["task_id"], OTHER_WORKER_ID, 750, "Worker B")
        return task["task_id"], bid_a["bid_id"], bid_b["bid_id"]

    async def test_owner_accepts_one_of_two_bids(
        self,
        orchestrator: LifecycleOrchestrator,
        bid_store: BidStore,
        task_store: TaskStore,
    ) -> None:
        task_id, bid_a, bid_b = await self._two_bids(orchestrator)

        await orchestrator.accept_bid(bid_a, actor_id=OWNER_ID)

        task = await task_store.get_task(task_id)
        assert task["state"] == TASK_IN_PROGRESS
        assert task["assigned_worker_id"] == WORKER_ID
        assert (await bid_store.get_bid(bid_a))["status"] == BID_ACCEPTED
        assert (await bid_store.get_bid(bid_b))["status"] == BID_REJECTED

    async def test_completion_pays_worker_and_releases_escrow(
        self,
        orchestrator: LifecycleOrchestrator,
        ledger: Ledger,
    ) -> None:
        task_id, bid_a, _ = await self._two_bids(orchestrator)
        await orchestrator.accept_and_pay(bid_a, actor_id=OWNER_ID)
        before = await ledger.get_balance(WORKER_ID)

        await orchestrator.request_completion(task_id, actor_id=WORKER_ID)
        result = await orchestrator.complete_and_release_payment(
            task_id,
            WORKER_ID,
            800,
            actor_id=OWNER_ID,
        )

        assert result["task"]["state"] == TASK_COMPLETED
        assert await ledger.get_balance(WORKER_ID) - before == Decimal("800.00")
        assert (await ledger.get_escrow(task_id))["status"] == ESCROW_RELEASED

    async def test_debit_above_balance(self, ledger: Ledger) -> None:
        await ledger.credit_wallet(OWNER_ID, 50, "Top up")

        with pytest.raises(ServiceError) as exc_info:
            await ledger.debit_wallet(OWNER_ID, 100, "Too much")

        assert exc_info.value.error == "INSUFFICIENT_BALANCE"
        assert await ledger.get_balance(OWNER_ID) == Decimal("50.00")
