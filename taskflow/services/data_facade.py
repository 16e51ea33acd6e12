"""
Data facade -- the single read/write surface offered to the UI layer.

Aggregates the three replica managers around one shared join resolver and
carries the dashboard's selection state. Constructed explicitly; there is
no global instance.

Usage:
    async with DataFacade(store, feed) as data:
        tasks = data.tasks.list()
        await data.messages.send_message("hi", "team", user_id)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, get_args

from taskflow.models import ChatChannel, ChatMessage, WorkItem
from taskflow.repos.store import ChangeFeed, RemoteStore
from taskflow.services.join_resolver import JoinResolver
from taskflow.services.replica_manager import (
    Listener,
    MessageReplica,
    PersonReplica,
    ReplicaManager,
    TaskReplica,
)

logger = logging.getLogger(__name__)


class DataFacade:
    """Tasks, messages and users behind one lifecycle."""

    def __init__(self, store: RemoteStore, feed: ChangeFeed, resolver: JoinResolver | None = None):
        self.resolver = resolver or JoinResolver(store)
        self.tasks = TaskReplica(store, feed, self.resolver)
        self.messages = MessageReplica(store, feed, self.resolver)
        self.users = PersonReplica(store, feed, self.resolver)

        self.selected_task_id: str | None = None
        self.chat_channel: ChatChannel = "team"
        self._listeners: list[Listener] = []

        for manager in self.managers:
            manager.subscribe_changes(self._on_change)

    @property
    def managers(self) -> tuple[ReplicaManager, ...]:
        return (self.tasks, self.messages, self.users)

    @property
    def loading(self) -> bool:
        return any(m.loading for m in self.managers)

    def family(self, name: str) -> ReplicaManager:
        """Look a manager up by family name. Raises KeyError."""
        for manager in self.managers:
            if manager.family == name:
                return manager
        raise KeyError(name)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """
        Start every family. If any fails, all are closed and the first
        failure is raised.
        """
        results = await asyncio.gather(*(m.start() for m in self.managers), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error("facade: start failed (%d of %d families): %s", len(errors), len(results), errors[0])
            await self.close()
            raise errors[0]
        logger.info("facade: started")

    async def close(self) -> None:
        for manager in self.managers:
            await manager.close()

    async def __aenter__(self) -> DataFacade:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- listeners -----------------------------------------------------------

    def subscribe_changes(self, callback: Listener) -> Callable[[], None]:
        """Run callback(family) after any family changes. Returns the remover."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _on_change(self, family: str) -> None:
        if family == self.users.family:
            self.messages.refresh_sender_names()
        if family == self.tasks.family and self.selected_task_id is not None:
            if not self.tasks.loading and self.tasks.get(self.selected_task_id) is None:
                logger.debug("facade: selected task disappeared task_id=%s", self.selected_task_id)
                self.selected_task_id = None
        for callback in list(self._listeners):
            try:
                callback(family)
            except Exception:
                logger.exception("facade: change listener failed family=%s", family)

    # -- selection state -----------------------------------------------------

    def select_task(self, task_id: str | None) -> WorkItem | None:
        """Select a task for the detail view. Unknown ids clear the selection."""
        task = self.tasks.get(task_id) if task_id is not None else None
        self.selected_task_id = task.id if task is not None else None
        return task

    @property
    def selected_task(self) -> WorkItem | None:
        if self.selected_task_id is None:
            return None
        return self.tasks.get(self.selected_task_id)

    async def delete_task(self, task_id: str) -> None:
        """Delete remotely; the selection is cleared right away."""
        await self.tasks.delete_task(task_id)
        if self.selected_task_id == str(task_id):
            self.selected_task_id = None

    def set_chat_channel(self, channel: str) -> None:
        if channel not in get_args(ChatChannel):
            raise ValueError(f"unknown chat channel: {channel!r}")
        self.chat_channel = channel

    def visible_messages(self) -> list[ChatMessage]:
        return self.messages.list(channel=self.chat_channel)
