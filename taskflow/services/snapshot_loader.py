"""
Snapshot loaders -- one full read per entity family.

Each loader returns a complete, fully joined replica state that the caller
swaps in with a single assignment, so a half-loaded collection is never
observable. A failed read raises LoadError; retrying is the caller's call.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from replica.kernel.merger import collection_from_rows, task_tree_from_rows
from replica.kernel.types import MESSAGES, SUBTASKS, TASKS, USER_ROLES, USERS
from taskflow.errors import LoadError, StoreError
from taskflow.models import ChatMessage, Person, SubItem, WorkItem
from taskflow.repos.store import RemoteStore
from taskflow.services.join_resolver import JoinResolver

logger = logging.getLogger(__name__)


def valid_rows(rows: list[dict[str, Any]], model: type[BaseModel], family: str) -> list[dict[str, Any]]:
    """Keep the rows that validate against the model. Bad rows are logged and skipped."""
    kept: list[dict[str, Any]] = []
    for row in rows:
        try:
            model.model_validate(row)
        except ValidationError as e:
            logger.warning(
                "snapshot: skipping invalid %s row id=%s (%d errors)",
                family,
                row.get("id"),
                e.error_count(),
            )
            continue
        kept.append(row)
    return kept


class SnapshotLoader:
    """Base loader. Subclasses implement _load()."""

    family: str = ""

    def __init__(self, store: RemoteStore, resolver: JoinResolver):
        self.store = store
        self.resolver = resolver

    async def load(self) -> dict[str, Any]:
        try:
            state = await self._load()
        except StoreError as e:
            logger.error("snapshot: %s load failed: %s", self.family, e.message)
            raise LoadError(self.family, e) from e
        return state

    async def _load(self) -> dict[str, Any]:
        raise NotImplementedError


class TaskSnapshotLoader(SnapshotLoader):
    """Tasks with their sub-items grouped under them by task_id."""

    family = "tasks"

    async def _load(self) -> dict[str, Any]:
        task_rows = await self.store.read(TASKS, order_by="created_at")
        sub_rows = await self.store.read(SUBTASKS, order_by="created_at")

        tasks = valid_rows(task_rows, WorkItem, TASKS)
        subs = valid_rows(sub_rows, SubItem, SUBTASKS)
        tree = task_tree_from_rows(tasks, subs)

        orphans = sum(len(bucket) for bucket in tree["orphans"].values())
        logger.info("snapshot: loaded %d tasks, %d sub-items (%d orphaned)", len(tree["tasks"]), len(subs), orphans)
        return tree


class MessageSnapshotLoader(SnapshotLoader):
    """Chat messages in created_at order, sender names joined on."""

    family = "messages"

    async def _load(self) -> dict[str, Any]:
        rows = await self.store.read(MESSAGES, order_by="created_at")

        sender_ids = sorted({str(r["sender_id"]) for r in rows if r.get("sender_id") is not None})
        if sender_ids:
            # A directory failure degrades names, it does not fail the load.
            try:
                people = await self.store.read(USERS, {"user_id": sender_ids})
            except StoreError as e:
                logger.warning("snapshot: sender lookup failed, names unresolved: %s", e.message)
                people = []
            self.resolver.prime_people(people)

        for row in rows:
            row["sender_name"] = self.resolver.resolve_sender_name(row.get("sender_id"))

        messages = valid_rows(rows, ChatMessage, MESSAGES)
        logger.info("snapshot: loaded %d messages from %d senders", len(messages), len(sender_ids))
        return collection_from_rows(messages)


class PersonSnapshotLoader(SnapshotLoader):
    """The user directory with roles joined on; no role record means client."""

    family = "users"

    async def _load(self) -> dict[str, Any]:
        rows = await self.store.read(USERS, order_by="created_at")
        self.resolver.replace_people(rows)

        user_ids = sorted({str(r["user_id"]) for r in rows if r.get("user_id") is not None})
        if user_ids:
            try:
                roles = await self.store.read(USER_ROLES, {"user_id": user_ids})
            except StoreError as e:
                logger.warning("snapshot: role lookup failed, keeping indexed roles: %s", e.message)
            else:
                self.resolver.replace_roles(roles)

        for row in rows:
            row["role"] = self.resolver.resolve_role(row.get("user_id"))

        people = valid_rows(rows, Person, USERS)
        logger.info("snapshot: loaded %d users", len(people))
        return collection_from_rows(people)
