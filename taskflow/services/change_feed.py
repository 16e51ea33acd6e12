"""
Change event subscriber.

Opens one feed channel per watched collection and pumps its payloads, parsed
into ChangeEvents, into a registered handler. Each channel has its own pump
task that awaits the handler one event at a time, so events of one
collection are handled strictly in delivery order. Nothing orders events
across collections.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from replica.kernel.events import parse_payload
from replica.kernel.types import ChangeEvent, now_iso
from taskflow.errors import StoreError, SubscriptionError
from taskflow.repos.store import ALL_EVENTS, ChangeFeed, FeedSubscription

logger = logging.getLogger(__name__)

Handler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass
class SubscriptionHandle:
    """An open channel and the task pumping it."""

    collection: str
    subscription: FeedSubscription
    task: asyncio.Task | None = None
    closed: bool = False
    delivered: int = field(default=0)


class ChangeEventSubscriber:
    """Typed change notifications from a ChangeFeed, delivered to handlers."""

    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self.handles: list[SubscriptionHandle] = []
        self._sequence = 0

    async def subscribe(
        self,
        collection: str,
        handler: Handler,
        event_mask: Iterable[str] = ALL_EVENTS,
    ) -> SubscriptionHandle:
        """
        Open a channel for one collection.
        Raises SubscriptionError if the feed cannot open it.
        """
        try:
            subscription = await self.feed.subscribe(collection, event_mask)
        except (StoreError, OSError) as e:
            logger.error("subscriber: cannot open channel collection=%s: %s", collection, e)
            raise SubscriptionError(collection, e) from e

        handle = SubscriptionHandle(collection=collection, subscription=subscription)
        handle.task = asyncio.create_task(
            self._pump(handle, handler),
            name=f"feed:{collection}:{subscription.id}",
        )
        self.handles.append(handle)
        logger.debug("subscriber: opened collection=%s subscription=%d", collection, subscription.id)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """
        Stop the pump and release the feed channel. Idempotent.
        Payloads still queued on the channel are discarded.
        """
        if handle.closed:
            return
        handle.closed = True

        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass

        try:
            await self.feed.unsubscribe(handle.subscription)
        except StoreError as e:
            logger.warning("subscriber: error releasing channel collection=%s: %s", handle.collection, e)
        finally:
            if handle in self.handles:
                self.handles.remove(handle)
        logger.debug(
            "subscriber: closed collection=%s subscription=%d delivered=%d",
            handle.collection,
            handle.subscription.id,
            handle.delivered,
        )

    async def close(self) -> None:
        """Release every open channel."""
        for handle in list(self.handles):
            await self.unsubscribe(handle)

    async def _pump(self, handle: SubscriptionHandle, handler: Handler) -> None:
        async for payload in handle.subscription:
            if handle.closed:
                break
            try:
                event = parse_payload(handle.collection, payload)
            except ValueError as e:
                logger.warning("subscriber: skipping malformed payload collection=%s: %s", handle.collection, e)
                continue

            self._sequence += 1
            event.sequence = self._sequence
            event.received_at = now_iso()
            handle.delivered += 1

            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "subscriber: handler failed collection=%s kind=%s sequence=%d",
                    event.collection,
                    event.kind,
                    event.sequence,
                )
