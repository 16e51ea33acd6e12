"""Pick the store adapter for the current configuration."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from taskflow import db
from taskflow.config import settings
from taskflow.repos.memory_store import MemoryStore
from taskflow.repos.postgres_store import PostgresChangeFeed, PostgresStore
from taskflow.repos.store import ChangeFeed, RemoteStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_store(database_url: str | None = None) -> AsyncIterator[tuple[RemoteStore, ChangeFeed]]:
    """
    Yield (store, feed). Postgres when a database URL is configured,
    otherwise a fresh in-memory store.
    """
    url = settings.DATABASE_URL if database_url is None else database_url

    if not url:
        logger.info("store: no DATABASE_URL, using in-memory store")
        memory = MemoryStore(feed_queue_size=settings.FEED_QUEUE_SIZE)
        try:
            yield memory, memory
        finally:
            await memory.close()
        return

    pool = await db.init_pool(url)
    store = PostgresStore(pool)
    feed = PostgresChangeFeed(url, store)
    logger.info("store: connected to postgres channel=%s", feed.channel)
    try:
        yield store, feed
    finally:
        await feed.close()
        await db.close_pool()
