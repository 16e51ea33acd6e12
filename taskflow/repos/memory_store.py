"""
In-memory store and change feed.

Behaves like the Postgres deployment closely enough for tests and local
development: ids and timestamps are generated on insert, deleting a task
cascades to its subtasks, and every committed write is published to the
matching feed subscriptions as {"kind", "new", "oldId"} payloads.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from replica.kernel.types import (
    COLLECTIONS,
    DELETE,
    INSERT,
    MESSAGES,
    SUBTASKS,
    TASKS,
    UPDATE,
    USER_ROLES,
    USERS,
    timestamp_key,
)
from taskflow.errors import StoreError
from taskflow.repos.store import ALL_EVENTS, ChangeFeed, FeedSubscription, RemoteStore

logger = logging.getLogger(__name__)

# Tables without timestamp columns
_NO_TIMESTAMPS = {USER_ROLES}


class MemoryStore(RemoteStore, ChangeFeed):
    """In-memory store for testing. One instance is both store and feed."""

    def __init__(self, feed_queue_size: int = 0) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self.subscriptions: dict[str, list[FeedSubscription]] = {name: [] for name in COLLECTIONS}
        self.feed_queue_size = feed_queue_size

    # -- test helpers --------------------------------------------------------

    def seed(self, collection: str, rows: Iterable[dict[str, Any]]) -> None:
        """Load rows directly, without publishing change events."""
        table = self._table(collection)
        for row in rows:
            table[str(row["id"])] = copy.deepcopy(row)

    def publish(self, collection: str, payload: dict[str, Any]) -> int:
        """
        Push a raw payload to every matching subscription, as the real feed
        would. Returns how many channels received it. Used to simulate
        redelivery and out-of-order arrival.
        """
        delivered = 0
        kind = payload.get("kind") or payload.get("eventType")
        for sub in list(self.subscriptions.get(collection, [])):
            if sub.matches(kind) and sub.push(copy.deepcopy(payload)):
                delivered += 1
        return delivered

    def open_channels(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self.subscriptions[collection])
        return sum(len(subs) for subs in self.subscriptions.values())

    # -- RemoteStore ---------------------------------------------------------

    async def read(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(r) for r in self._table(collection).values() if _matches(r, filters)]
        if order_by is not None:
            rows.sort(key=lambda r: timestamp_key(r.get(order_by)))
        return rows

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        table = self._table(collection)
        row = copy.deepcopy(record)
        row_id = str(row.get("id") or uuid.uuid4())
        if row_id in table:
            raise StoreError(f"duplicate key value violates unique constraint on {collection}.id", collection=collection)
        if collection == SUBTASKS and str(row.get("task_id")) not in self.tables[TASKS]:
            raise StoreError(f"subtasks.task_id '{row.get('task_id')}' references no task", collection=collection)

        row["id"] = row_id
        if collection not in _NO_TIMESTAMPS:
            now = datetime.now(UTC)
            row.setdefault("created_at", now)
            if collection not in (MESSAGES, USERS):
                row.setdefault("updated_at", now)
        table[row_id] = row

        self._emit(collection, INSERT, new=row)
        return copy.deepcopy(row)

    async def update_patch(self, collection: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        table = self._table(collection)
        row = table.get(str(record_id))
        if row is None:
            raise StoreError(f"{collection} row '{record_id}' not found", collection=collection)

        row.update(copy.deepcopy({k: v for k, v in patch.items() if k != "id"}))
        if "updated_at" in row:
            row["updated_at"] = datetime.now(UTC)

        self._emit(collection, UPDATE, new=row)
        return copy.deepcopy(row)

    async def delete(self, collection: str, record_id: str) -> None:
        table = self._table(collection)
        if table.pop(str(record_id), None) is None:
            return
        self._emit(collection, DELETE, old_id=str(record_id))

        if collection == TASKS:
            # ON DELETE CASCADE
            children = [sid for sid, sub in self.tables[SUBTASKS].items() if str(sub.get("task_id")) == str(record_id)]
            for sub_id in children:
                del self.tables[SUBTASKS][sub_id]
                self._emit(SUBTASKS, DELETE, old_id=sub_id)

    # -- ChangeFeed ----------------------------------------------------------

    async def subscribe(self, collection: str, event_mask: Iterable[str] = ALL_EVENTS) -> FeedSubscription:
        self._table(collection)
        sub = FeedSubscription(collection, event_mask, maxsize=self.feed_queue_size)
        self.subscriptions[collection].append(sub)
        logger.debug("memory_store: subscribed collection=%s subscription=%d", collection, sub.id)
        return sub

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        subs = self.subscriptions.get(subscription.collection, [])
        if subscription in subs:
            subs.remove(subscription)
        subscription.close()

    async def close(self) -> None:
        for subs in self.subscriptions.values():
            for sub in subs:
                sub.close()
            subs.clear()

    # -- internals -----------------------------------------------------------

    def _table(self, collection: str) -> dict[str, dict[str, Any]]:
        table = self.tables.get(collection)
        if table is None:
            raise StoreError(f"relation '{collection}' does not exist", collection=collection)
        return table

    def _emit(self, collection: str, kind: str, *, new: dict | None = None, old_id: str | None = None) -> None:
        payload: dict[str, Any] = {"kind": kind}
        if new is not None:
            payload["new"] = new
        if old_id is not None:
            payload["oldId"] = old_id
        self.publish(collection, payload)


def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, list | set | tuple | frozenset):
            if str(value) not in {str(e) for e in expected}:
                return False
        elif str(value) != str(expected):
            return False
    return True
