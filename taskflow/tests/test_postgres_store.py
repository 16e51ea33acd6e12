"""
Tests for the Postgres store adapter and LISTEN/NOTIFY feed.

Need a database migrated with `alembic upgrade head`; skipped unless
DATABASE_URL is set.
"""

from __future__ import annotations

import asyncio
import os
import uuid

import pytest
import pytest_asyncio
from factories import eventually

from taskflow import db
from taskflow.errors import StoreError
from taskflow.repos.postgres_store import PostgresChangeFeed, PostgresStore

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not os.environ.get("DATABASE_URL"), reason="DATABASE_URL not set"),
]


@pytest_asyncio.fixture
async def pg():
    pool = await db.init_pool(os.environ["DATABASE_URL"])
    store = PostgresStore(pool)
    feed = PostgresChangeFeed(os.environ["DATABASE_URL"], store)
    yield store, feed
    await feed.close()
    await db.close_pool()


class TestPostgresStore:
    async def test_insert_read_update_delete(self, pg):
        store, _ = pg
        row = await store.insert("tasks", {"title": f"pg-{uuid.uuid4()}", "progress": 10})
        task_id = row["id"]
        assert isinstance(task_id, str)

        [read] = await store.read("tasks", {"id": task_id})
        assert read["progress"] == 10

        updated = await store.update_patch("tasks", task_id, {"progress": 20})
        assert updated["progress"] == 20
        assert updated["updated_at"] >= row["updated_at"]

        await store.delete("tasks", task_id)
        assert await store.read("tasks", {"id": task_id}) == []

    async def test_membership_filter(self, pg):
        store, _ = pg
        a = await store.insert("tasks", {"title": "a"})
        b = await store.insert("tasks", {"title": "b"})
        rows = await store.read("tasks", {"id": [a["id"], b["id"]]}, order_by="created_at")
        assert {r["id"] for r in rows} == {a["id"], b["id"]}
        for r in rows:
            await store.delete("tasks", r["id"])

    async def test_unknown_column_rejected(self, pg):
        store, _ = pg
        with pytest.raises(StoreError):
            await store.read("tasks", {"title; DROP TABLE tasks": "x"})

    async def test_update_missing_row(self, pg):
        store, _ = pg
        with pytest.raises(StoreError):
            await store.update_patch("tasks", str(uuid.uuid4()), {"title": "x"})


class TestPostgresFeed:
    async def test_insert_and_cascade_notifications(self, pg):
        store, feed = pg
        received = []
        sub = await feed.subscribe("subtasks")

        async def drain():
            async for payload in sub:
                received.append(payload)

        reader = asyncio.create_task(drain())
        task = await store.insert("tasks", {"title": "feed"})
        child = await store.insert("subtasks", {"task_id": task["id"], "title": "child"})
        await store.delete("tasks", task["id"])

        await eventually(lambda: len(received) == 2, timeout=5.0)
        assert received[0]["eventType"] == "INSERT"
        assert received[0]["new"]["id"] == child["id"]
        assert received[1]["eventType"] == "DELETE"
        assert received[1]["old"]["id"] == child["id"]

        await feed.unsubscribe(sub)
        reader.cancel()
