"""Live list subscriptions built on database change signals."""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

from pydantic_core import to_jsonable_python

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable

    from marketplace_service.services.database import Database


async def watch(
    db: Database,
    query: Callable[[], Awaitable[Any]],
    poll_interval: float,
) -> AsyncGenerator[Any, None]:
    """
    Yield the result of ``query`` now and again whenever it changes.

    Re-queries after every local commit and at least every
    ``poll_interval`` seconds, and only yields snapshots that differ
    from the previous one. Closing or cancelling the iterator stops
    all further reads.
    """
    version = db.version
    snapshot = await query()
    yield snapshot

    while True:
        version = await db.wait_for_change(version, poll_interval)
        latest = await query()
        if latest != snapshot:
            snapshot = latest
            yield snapshot


async def sse_events(
    snapshots: AsyncGenerator[Any, None],
    event: str,
) -> AsyncIterator[dict[str, Any]]:
    """Wrap snapshots as Server-Sent Event messages."""
    # Send retry directive
    yield {"retry": 3000}

    sequence = 0
    async with aclosing(snapshots):
        async for snapshot in snapshots:
            sequence += 1
            yield {
                "event": event,
                "data": json.dumps(to_jsonable_python(snapshot)),
                "id": str(sequence),
            }
