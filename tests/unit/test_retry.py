"""Unit tests for the retry policy."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.services.retry import RetryPolicy, retry_with_backoff

POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=5.0)


@pytest.mark.unit
def test_delays_double_and_are_capped() -> None:
    policy = RetryPolicy(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.unit
def test_policy_rejects_invalid_settings() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0, base_delay_seconds=1.0, max_delay_seconds=5.0)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=3, base_delay_seconds=6.0, max_delay_seconds=5.0)


@pytest.mark.unit
async def test_retries_transient_failures_until_success() -> None:
    operation = AsyncMock(
        side_effect=[
            ServiceError("COMMIT_FAILED", "busy", 409),
            ServiceError("UNAVAILABLE", "slow", 503),
            "done",
        ]
    )
    sleep = AsyncMock()

    result = await retry_with_backoff(operation, POLICY, sleep=sleep)

    assert result == "done"
    assert operation.await_count == 3
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.unit
async def test_gives_up_after_max_attempts() -> None:
    error = ServiceError("COMMIT_FAILED", "busy", 409)
    operation = AsyncMock(side_effect=error)
    sleep = AsyncMock()

    with pytest.raises(ServiceError) as exc_info:
        await retry_with_backoff(operation, POLICY, sleep=sleep)

    assert exc_info.value is error
    assert operation.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.unit
async def test_validation_errors_surface_immediately() -> None:
    operation = AsyncMock(side_effect=ServiceError("TASK_NOT_OPEN", "closed", 409))
    sleep = AsyncMock()

    with pytest.raises(ServiceError) as exc_info:
        await retry_with_backoff(operation, POLICY, sleep=sleep)

    assert exc_info.value.error == "TASK_NOT_OPEN"
    assert operation.await_count == 1
    sleep.assert_not_awaited()
