"""Exponential backoff for transient persistence failures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries."""

    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.base_delay_seconds < 0 or self.max_delay_seconds < self.base_delay_seconds:
            msg = "delays must satisfy 0 <= base_delay_seconds <= max_delay_seconds"
            raise ValueError(msg)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), doubled each time and capped."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Only retryable ServiceErrors (COMMIT_FAILED, UNAVAILABLE) are retried.
    Everything else, validation failures included, propagates at once.
    The operation must re-check its own preconditions, since a failed
    attempt may be repeated.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ServiceError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient failure, retrying",
                extra={"error_code": exc.error, "attempt": attempt, "delay_seconds": delay},
            )
            await sleep(delay)
            attempt += 1
