"""
Postgres adapter for the remote store and change feed.

Reads and writes go through the asyncpg pool. The change feed rides on
LISTEN/NOTIFY: the trigger installed by migration 002 publishes every row
change on one channel as

    {"table": "tasks", "eventType": "UPDATE", "new": {...}, "old": {"id": ...}}

Rows too large for a NOTIFY payload are published without "new"; the feed
re-reads them by id before delivery.

All SQL lives here and ONLY here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from typing import Any

import asyncpg

from replica.kernel.types import DELETE, MESSAGES, SUBTASKS, TASKS, USER_ROLES, USERS
from taskflow.config import settings
from taskflow.db import init_connection
from taskflow.errors import StoreError
from taskflow.repos.store import ALL_EVENTS, ChangeFeed, FeedSubscription, RemoteStore

logger = logging.getLogger(__name__)

# Column whitelist per table. Identifiers are interpolated into SQL, so
# nothing outside this map ever reaches a query string.
TABLE_COLUMNS: dict[str, frozenset[str]] = {
    TASKS: frozenset({
        "id", "title", "description", "progress", "start_date", "due_date",
        "assignees", "priority", "created_by", "created_at", "updated_at",
    }),
    SUBTASKS: frozenset({
        "id", "task_id", "title", "description", "completed", "priority",
        "due_date", "assignees", "created_at", "updated_at",
    }),
    MESSAGES: frozenset({"id", "sender_id", "content", "channel", "created_at"}),
    USERS: frozenset({
        "id", "user_id", "name", "email", "avatar", "contact", "representative", "created_at",
    }),
    USER_ROLES: frozenset({"id", "user_id", "role"}),
}

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _columns(collection: str) -> frozenset[str]:
    columns = TABLE_COLUMNS.get(collection)
    if columns is None:
        raise StoreError(f"relation '{collection}' is not replicated", collection=collection)
    return columns


def _check_column(collection: str, column: str) -> str:
    if column not in _columns(collection):
        raise StoreError(f"column '{column}' does not exist on {collection}", collection=collection)
    return column


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    return dict(row.items())


class PostgresStore(RemoteStore):
    """Postgres-backed remote store."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def read(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        _columns(collection)
        clauses: list[str] = []
        params: list[Any] = []
        for column, expected in (filters or {}).items():
            _check_column(collection, column)
            if isinstance(expected, list | set | tuple | frozenset):
                params.append([str(e) for e in expected])
                clauses.append(f"{column}::text = ANY(${len(params)}::text[])")
            else:
                params.append(str(expected))
                clauses.append(f"{column}::text = ${len(params)}")

        query = f"SELECT * FROM {collection}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if order_by is not None:
            query += f" ORDER BY {_check_column(collection, order_by)} ASC"

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except _STORE_ERRORS as e:
            raise StoreError(str(e), collection=collection) from e
        return [_row_to_dict(r) for r in rows]

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        # A null id is left to the column default.
        columns = [_check_column(collection, c) for c in record if not (c == "id" and record[c] is None)]
        values = [record[c] for c in columns]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"INSERT INTO {collection} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, *values)
        except _STORE_ERRORS as e:
            raise StoreError(str(e), collection=collection) from e
        return _row_to_dict(row)

    async def update_patch(self, collection: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        columns = [_check_column(collection, c) for c in patch if c != "id"]
        assignments = [f"{c} = ${i}" for i, c in enumerate(columns, start=1)]
        if "updated_at" in _columns(collection) and "updated_at" not in columns:
            assignments.append("updated_at = now()")
        if not assignments:
            raise StoreError(f"empty patch for {collection} row '{record_id}'", collection=collection)

        params = [patch[c] for c in columns] + [str(record_id)]
        query = f"UPDATE {collection} SET {', '.join(assignments)} WHERE id::text = ${len(params)} RETURNING *"

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, *params)
        except _STORE_ERRORS as e:
            raise StoreError(str(e), collection=collection) from e
        if row is None:
            raise StoreError(f"{collection} row '{record_id}' not found", collection=collection)
        return _row_to_dict(row)

    async def delete(self, collection: str, record_id: str) -> None:
        _columns(collection)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(f"DELETE FROM {collection} WHERE id::text = $1", str(record_id))
        except _STORE_ERRORS as e:
            raise StoreError(str(e), collection=collection) from e


class PostgresChangeFeed(ChangeFeed):
    """
    LISTEN/NOTIFY change feed.

    One dedicated connection listens on the notify channel while at least one
    subscription is open. Notifications are dispatched by a single pump task,
    so delivery order per table matches commit order.
    """

    def __init__(self, dsn: str, store: PostgresStore, channel: str | None = None):
        self.dsn = dsn
        self.store = store
        self.channel = channel or settings.TASKFLOW_NOTIFY_CHANNEL
        self.subscriptions: dict[str, list[FeedSubscription]] = {}
        self._conn: asyncpg.Connection | None = None
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def subscribe(self, collection: str, event_mask: Iterable[str] = ALL_EVENTS) -> FeedSubscription:
        _columns(collection)
        async with self._lock:
            if self._conn is None:
                await self._listen()
            sub = FeedSubscription(collection, event_mask, maxsize=settings.FEED_QUEUE_SIZE)
            self.subscriptions.setdefault(collection, []).append(sub)
        logger.info("pg_feed: subscribed collection=%s subscription=%d", collection, sub.id)
        return sub

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        async with self._lock:
            subs = self.subscriptions.get(subscription.collection, [])
            if subscription in subs:
                subs.remove(subscription)
            subscription.close()
            if not any(self.subscriptions.values()):
                await self._unlisten()
        logger.info("pg_feed: unsubscribed collection=%s subscription=%d", subscription.collection, subscription.id)

    async def close(self) -> None:
        async with self._lock:
            for subs in self.subscriptions.values():
                for sub in subs:
                    sub.close()
            self.subscriptions.clear()
            await self._unlisten()

    # -- connection lifecycle ------------------------------------------------

    async def _listen(self) -> None:
        try:
            conn = await asyncpg.connect(self.dsn)
            await init_connection(conn)
            await conn.add_listener(self.channel, self._on_notify)
        except _STORE_ERRORS as e:
            raise StoreError(f"cannot listen on '{self.channel}': {e}") from e
        conn.add_termination_listener(self._on_terminate)
        self._conn = conn
        self._pump = asyncio.create_task(self._run_pump())

    async def _unlisten(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        if self._conn is not None:
            conn, self._conn = self._conn, None
            try:
                await conn.remove_listener(self.channel, self._on_notify)
                await conn.close()
            except _STORE_ERRORS:
                logger.warning("pg_feed: error while closing listener connection", exc_info=True)

    def _on_notify(self, conn: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        self._inbox.put_nowait(payload)

    def _on_terminate(self, conn: asyncpg.Connection) -> None:
        # Reconnection is the caller's business.
        logger.error("pg_feed: listener connection terminated, feed is down channel=%s", self.channel)

    # -- dispatch ------------------------------------------------------------

    async def _run_pump(self) -> None:
        while True:
            raw = await self._inbox.get()
            try:
                await self._dispatch(raw)
            except StoreError:
                logger.warning("pg_feed: could not re-read oversized row, notification skipped", exc_info=True)
            except Exception:
                logger.exception("pg_feed: dispatch failed, notification skipped payload=%r", raw[:200])

    async def _dispatch(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("pg_feed: skipping malformed notification: %r", raw[:200])
            return
        if not isinstance(payload, dict):
            logger.warning("pg_feed: skipping non-object notification: %r", raw[:200])
            return

        table = payload.get("table")
        subs = [s for s in self.subscriptions.get(table, []) if s.matches(payload.get("eventType"))]
        if not subs:
            return

        if payload.get("new") is None and payload.get("eventType") != DELETE:
            row_id = (payload.get("old") or {}).get("id") or payload.get("id")
            rows = await self.store.read(table, {"id": row_id})
            if not rows:
                return
            payload["new"] = rows[0]

        for sub in subs:
            sub.push(payload)
