"""
Remote store and change feed contracts.

The replica core consumes the authoritative store through these two
interfaces only. Implement with Postgres for production (PostgresStore), or
in-memory for tests and local development (MemoryStore).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable
from typing import Any

from replica.kernel.types import EVENT_KINDS

logger = logging.getLogger(__name__)

ALL_EVENTS: frozenset[str] = frozenset(EVENT_KINDS)

_CLOSED = object()
_ids = itertools.count(1)


# ---------------------------------------------------------------------------
# Feed subscription
# ---------------------------------------------------------------------------


class FeedSubscription:
    """
    One open channel on the change feed: an async iterator of raw payloads.

    Payloads are queued by the feed as they arrive and consumed by exactly one
    reader. Closing ends the iteration and discards anything still queued, so
    nothing from a released channel is ever delivered.
    """

    def __init__(self, collection: str, event_mask: Iterable[str] = ALL_EVENTS, maxsize: int = 0):
        self.id = next(_ids)
        self.collection = collection
        self.event_mask = frozenset(k.upper() for k in event_mask)
        self.closed = False
        self.dropped = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)

    def __repr__(self) -> str:
        return f"FeedSubscription(id={self.id}, collection={self.collection!r}, closed={self.closed})"

    def matches(self, kind: str | None) -> bool:
        return isinstance(kind, str) and kind.upper() in self.event_mask

    def push(self, payload: dict[str, Any]) -> bool:
        """Queue a payload. Returns False if the channel is closed or full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "feed: queue full, dropped payload collection=%s subscription=%d dropped=%d",
                self.collection,
                self.id,
                self.dropped,
            )
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> FeedSubscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self.closed:
            raise StopAsyncIteration
        return item


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class RemoteStore:
    """
    Abstract store interface. Every method fails with StoreError.

    Filters map a column to a scalar (equality) or to a list/set/tuple
    (membership). Rows are returned as plain dicts.
    """

    async def read(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read every row matching the filters, optionally ordered ascending."""
        raise NotImplementedError

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert one row. Returns the stored row with generated fields."""
        raise NotImplementedError

    async def update_patch(self, collection: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Overwrite the given fields of one row. Returns the stored row."""
        raise NotImplementedError

    async def delete(self, collection: str, record_id: str) -> None:
        """Delete one row by id. Deleting a missing row is not an error."""
        raise NotImplementedError


class ChangeFeed:
    """Abstract change feed: push subscriptions per collection."""

    async def subscribe(self, collection: str, event_mask: Iterable[str] = ALL_EVENTS) -> FeedSubscription:
        """Open a channel delivering raw change payloads for one collection."""
        raise NotImplementedError

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        """Release a channel. Releasing twice is a no-op."""
        raise NotImplementedError
