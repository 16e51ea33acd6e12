"""
Pytest configuration and fixtures for Taskflow service tests.

Everything runs against MemoryStore; the Postgres adapter tests skip
themselves unless DATABASE_URL is set.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from factories import GatedStore, message_row, person_row, sub_row, task_row

from taskflow.repos.memory_store import MemoryStore
from taskflow.services.join_resolver import JoinResolver


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def gated_store() -> GatedStore:
    return GatedStore()


@pytest.fixture
def resolver(store) -> JoinResolver:
    return JoinResolver(store, unknown_name="Unknown", default_role="client")


@pytest_asyncio.fixture
async def seeded(store) -> MemoryStore:
    """Two users (one admin), one task with one sub-item, two messages."""
    store.seed("users", [
        person_row("p1", "u1", "Alice", minute=0),
        person_row("p2", "u2", "Bob", minute=1),
    ])
    store.seed("user_roles", [{"id": "r1", "user_id": "u1", "role": "admin"}])
    store.seed("tasks", [task_row("t1", "Launch")])
    store.seed("subtasks", [sub_row("s1", "t1", "Copy review")])
    store.seed("messages", [
        message_row("m1", "u1", "Kickoff", minute=1),
        message_row("m2", "u2", "Client note", minute=2, channel="client"),
    ])
    return store
