"""
Replica managers -- one per entity family.

A manager owns the local replica of its family: it opens the change-feed
channels, runs the snapshot loader, and merges every inbound event into the
in-memory state. Reads are synchronous and never throw. Writes go to the
remote store only; the local state changes when the resulting change event
comes back through the feed.

Snapshot/event race:
  Channels open before the snapshot read. Every load is stamped with a
  version; while a load is in flight, inbound events are buffered. When the
  load returns, its state replaces the replica in one assignment and the
  buffer is replayed on top of it in delivery order. A buffered INSERT or
  UPDATE older than the snapshot's copy of the record is skipped as stale.
  A load superseded by a newer one is discarded.

Each inbound event goes through two steps:
  prepare  async. Validates INSERT rows and fills denormalized fields,
           possibly with a point lookup through the join resolver.
  apply    sync. Merges into the state (or into the buffer while loading),
           counts anomalies, notifies listeners.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, ValidationError

from replica.kernel.merger import (
    empty_collection,
    empty_task_tree,
    find_sub_item,
    list_records,
    list_tasks,
    merge,
    merge_role,
    merge_sender_names,
    merge_task_tree,
)
from replica.kernel.types import (
    DELETE,
    INSERT,
    MESSAGES,
    SUBTASKS,
    TASKS,
    UPDATE,
    USER_ROLES,
    USERS,
    ChangeEvent,
    MergeResult,
    timestamp_key,
)
from taskflow.errors import LoadError, MutationError, StoreError
from taskflow.models import (
    ChatChannel,
    ChatMessage,
    CreateSubItemRequest,
    CreateTaskRequest,
    Person,
    RoleAssignment,
    SendMessageRequest,
    SubItem,
    UpdateSubItemRequest,
    UpdateTaskRequest,
    WorkItem,
)
from taskflow.repos.store import ALL_EVENTS, ChangeFeed, RemoteStore
from taskflow.services.change_feed import ChangeEventSubscriber
from taskflow.services.join_resolver import JoinResolver
from taskflow.services.snapshot_loader import (
    MessageSnapshotLoader,
    PersonSnapshotLoader,
    SnapshotLoader,
    TaskSnapshotLoader,
)

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]

# Manager-level anomaly codes (the merger's own codes live in kernel.types)
STALE_REPLAY = "STALE_REPLAY"
INVALID_RECORD = "INVALID_RECORD"

# Anomalies worth an INFO line; the rest are routine at-least-once noise.
_NOTABLE = {"ORPHAN_CHILD", "ORPHANS_ADOPTED", "CASCADE_DROP", "WRONG_COLLECTION", INVALID_RECORD}


class ReplicaManager:
    """
    Base manager. Subclasses set the family, the watched collections, the
    loader and the row models, and add their family-specific operations.
    """

    family: str = ""
    collections: tuple[str, ...] = ()
    primary: str = ""
    event_mask: frozenset[str] = ALL_EVENTS
    loader_class: type[SnapshotLoader] = SnapshotLoader
    row_models: dict[str, type[BaseModel]] = {}

    def __init__(self, store: RemoteStore, feed: ChangeFeed, resolver: JoinResolver):
        self.store = store
        self.resolver = resolver
        self.subscriber = ChangeEventSubscriber(feed)
        self.loader = self.loader_class(store, resolver)

        self._state: dict[str, Any] = self._empty()
        self.loading = True
        self.load_error: LoadError | None = None
        self.snapshot_version = 0
        self.loaded_version = 0
        self._loading_version: int | None = None
        self._buffer: list[ChangeEvent] = []

        self.anomaly_counts: Counter[str] = Counter()
        self._listeners: list[Listener] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(loading={self.loading}, version={self.loaded_version})"

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """
        Open the family's channels, then load the first snapshot.
        Raises SubscriptionError or LoadError. Channels already opened are
        released on any failure, cancellation included.
        """
        version = self._begin_load()
        try:
            for collection in self.collections:
                await self.subscriber.subscribe(collection, self._on_event, self.event_mask)
            await self._load(version)
        except BaseException:
            await self.close()
            raise
        logger.info("replica: %s started version=%d", self.family, self.loaded_version)

    async def close(self) -> None:
        """Release every channel. Pending buffered events are dropped."""
        self._loading_version = None
        self._buffer = []
        await self.subscriber.close()

    async def __aenter__(self) -> ReplicaManager:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def refetch(self) -> None:
        """Re-run the snapshot loader and replace the replica. Raises LoadError."""
        await self._load(self._begin_load())

    # -- reads ---------------------------------------------------------------

    def list(self) -> list[BaseModel]:
        """The current collection in visible order. Never throws."""
        return self._as_models(self._rows(self._state), self.row_models[self.primary])

    def get(self, record_id: str) -> BaseModel | None:
        for item in self.list():
            if item.id == str(record_id):
                return item
        return None

    def subscribe_changes(self, callback: Listener) -> Callable[[], None]:
        """
        Register a callback run with the family name after every state change.
        Returns a function that removes it.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    # -- writes --------------------------------------------------------------

    async def create(self, data: dict[str, Any] | BaseModel) -> dict[str, Any]:
        """Insert into the remote store. Raises MutationError."""
        record = self._validated(f"{self.family}.create", self._create_request(), data).to_record()
        return await self._mutate(f"{self.family}.create", self.store.insert, self.primary, record)

    async def update_by_id(self, record_id: str, patch: dict[str, Any] | BaseModel) -> dict[str, Any]:
        """Patch one remote row. Raises MutationError."""
        operation = f"{self.family}.update"
        changes = self._validated(operation, self._update_request(), patch).to_patch()
        return await self._mutate(operation, self.store.update_patch, self.primary, str(record_id), changes)

    async def delete_by_id(self, record_id: str) -> None:
        """Delete one remote row. Raises MutationError."""
        await self._mutate(f"{self.family}.delete", self.store.delete, self.primary, str(record_id))

    # -- subclass hooks ------------------------------------------------------

    def _empty(self) -> dict[str, Any]:
        return empty_collection()

    def _rows(self, state: dict[str, Any]) -> list[dict[str, Any]]:
        return list_records(state, order_by="created_at")

    def _find(self, state: dict[str, Any], event: ChangeEvent) -> dict[str, Any] | None:
        return state["records"].get(event.record_id)

    def _merge(self, state: dict[str, Any], event: ChangeEvent) -> MergeResult:
        return merge(state, event)

    async def _prepare(self, event: ChangeEvent) -> ChangeEvent | None:
        """Validate an INSERT row. Returns None to drop the event."""
        if event.kind != INSERT:
            return event
        model = self.row_models.get(event.collection)
        if model is None:
            return event
        try:
            model.model_validate(event.new)
        except ValidationError as e:
            self.anomaly_counts[INVALID_RECORD] += 1
            logger.warning(
                "replica: %s dropping invalid %s row id=%s (%d errors)",
                self.family,
                event.collection,
                event.record_id,
                e.error_count(),
            )
            return None
        return event

    def _create_request(self) -> type[BaseModel]:
        raise MutationError(f"{self.family}.create", StoreError(f"{self.family} are read-only"))

    def _update_request(self) -> type[BaseModel]:
        raise MutationError(f"{self.family}.update", StoreError(f"{self.family} are read-only"))

    # -- loading -------------------------------------------------------------

    def _begin_load(self) -> int:
        self.snapshot_version += 1
        self._loading_version = self.snapshot_version
        return self.snapshot_version

    async def _load(self, version: int) -> None:
        try:
            state = await self.loader.load()
        except LoadError as e:
            if version != self._loading_version:
                raise
            self._loading_version = None
            self.load_error = e
            pending, self._buffer = self._buffer, []
            if self.loaded_version:
                # Keep the replica live on the previous snapshot.
                for event in pending:
                    self._apply(event)
            elif pending:
                logger.warning("replica: %s first load failed, discarding %d buffered events", self.family, len(pending))
            raise

        if version != self._loading_version:
            logger.info("replica: %s discarding superseded snapshot version=%d", self.family, version)
            return

        # No await from here on: the swap and replay are one step.
        self._loading_version = None
        pending, self._buffer = self._buffer, []
        replayed = 0
        for event in pending:
            if self._is_stale(state, event):
                self.anomaly_counts[STALE_REPLAY] += 1
                logger.debug("replica: %s skipping stale %s id=%s", self.family, event.kind, event.record_id)
                continue
            state, applied = self._merge_counted(state, event)
            replayed += applied

        self._state = state
        self.loaded_version = version
        self.loading = False
        self.load_error = None
        logger.info(
            "replica: %s snapshot applied version=%d replayed=%d skipped=%d",
            self.family,
            version,
            replayed,
            len(pending) - replayed,
        )
        self._notify()

    def _is_stale(self, snapshot: dict[str, Any], event: ChangeEvent) -> bool:
        if event.kind not in (INSERT, UPDATE) or not event.new or not event.new.get("updated_at"):
            return False
        current = self._find(snapshot, event)
        if current is None or not current.get("updated_at"):
            return False
        return timestamp_key(event.new["updated_at"]) < timestamp_key(current["updated_at"])

    # -- event path ----------------------------------------------------------

    async def _on_event(self, event: ChangeEvent) -> None:
        prepared = await self._prepare(event)
        if prepared is None:
            return
        if self._loading_version is not None:
            self._buffer.append(prepared)
            return
        self._apply(prepared)

    def _apply(self, event: ChangeEvent) -> None:
        self._state, applied = self._merge_counted(self._state, event)
        if applied:
            self._notify()

    def _merge_counted(self, state: dict[str, Any], event: ChangeEvent) -> tuple[dict[str, Any], bool]:
        result = self._merge(state, event)
        for anomaly in result.anomalies:
            self.anomaly_counts[anomaly.code] += 1
            level = logging.INFO if anomaly.code in _NOTABLE else logging.DEBUG
            logger.log(level, "replica: %s %s: %s", self.family, anomaly.code, anomaly.message)
        return result.collection, result.applied

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self.family)
            except Exception:
                logger.exception("replica: %s change listener failed", self.family)

    # -- helpers -------------------------------------------------------------

    def _as_models(self, rows: Iterable[dict[str, Any]], model: type[BaseModel]) -> list[Any]:
        items = []
        for row in rows:
            try:
                items.append(model.model_validate(row))
            except ValidationError:
                logger.debug("replica: %s hiding invalid row id=%s", self.family, row.get("id"))
        return items

    def _validated(self, operation: str, model: type[BaseModel], data: dict[str, Any] | BaseModel) -> Any:
        if isinstance(data, model):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MutationError(operation, e) from e

    async def _mutate(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await fn(*args)
        except StoreError as e:
            logger.warning("replica: %s failed: %s", operation, e.message)
            raise MutationError(operation, e) from e


# ---------------------------------------------------------------------------
# Tasks + sub-items
# ---------------------------------------------------------------------------


class TaskReplica(ReplicaManager):
    """Work items with their sub-items, merged from two feeds into one tree."""

    family = "tasks"
    collections = (TASKS, SUBTASKS)
    primary = TASKS
    loader_class = TaskSnapshotLoader
    row_models = {TASKS: WorkItem, SUBTASKS: SubItem}

    def _empty(self) -> dict[str, Any]:
        return empty_task_tree()

    def _rows(self, state: dict[str, Any]) -> list[dict[str, Any]]:
        return list_tasks(state)

    def _find(self, state: dict[str, Any], event: ChangeEvent) -> dict[str, Any] | None:
        if event.collection == SUBTASKS:
            return find_sub_item(state, event.record_id)
        return state["tasks"].get(event.record_id)

    def _merge(self, state: dict[str, Any], event: ChangeEvent) -> MergeResult:
        return merge_task_tree(state, event)

    def _create_request(self) -> type[BaseModel]:
        return CreateTaskRequest

    def _update_request(self) -> type[BaseModel]:
        return UpdateTaskRequest

    def get(self, record_id: str) -> WorkItem | None:
        row = self._state["tasks"].get(str(record_id))
        if row is None:
            return None
        found = self._as_models([row], WorkItem)
        return found[0] if found else None

    def get_sub_item(self, sub_id: str) -> SubItem | None:
        row = find_sub_item(self._state, str(sub_id))
        if row is None or str(row.get("task_id")) not in self._state["tasks"]:
            return None
        found = self._as_models([row], SubItem)
        return found[0] if found else None

    async def create_task(self, data: dict[str, Any] | CreateTaskRequest) -> dict[str, Any]:
        return await self.create(data)

    async def update_task(self, task_id: str, patch: dict[str, Any] | UpdateTaskRequest) -> dict[str, Any]:
        """Sub-items never travel with a task patch; they have their own operations."""
        if isinstance(patch, dict):
            patch = {k: v for k, v in patch.items() if k != "sub_items"}
        return await self.update_by_id(task_id, patch)

    async def delete_task(self, task_id: str) -> None:
        """The store cascades to the sub-items; their DELETE events follow."""
        await self.delete_by_id(task_id)

    async def add_sub_item(self, task_id: str, title: str, **fields: Any) -> dict[str, Any]:
        operation = "tasks.add_sub_item"
        request = self._validated(operation, CreateSubItemRequest, {"task_id": str(task_id), "title": title, **fields})
        return await self._mutate(operation, self.store.insert, SUBTASKS, request.to_record())

    async def update_sub_item(self, sub_id: str, patch: dict[str, Any] | UpdateSubItemRequest) -> dict[str, Any]:
        operation = "tasks.update_sub_item"
        changes = self._validated(operation, UpdateSubItemRequest, patch).to_patch()
        return await self._mutate(operation, self.store.update_patch, SUBTASKS, str(sub_id), changes)

    async def toggle_sub_item(self, sub_id: str, completed: bool) -> dict[str, Any]:
        """Flip a sub-item. `completed` is its current state; the inverse is written."""
        return await self._mutate(
            "tasks.toggle_sub_item",
            self.store.update_patch,
            SUBTASKS,
            str(sub_id),
            {"completed": not completed},
        )

    async def remove_sub_item(self, sub_id: str) -> None:
        await self._mutate("tasks.remove_sub_item", self.store.delete, SUBTASKS, str(sub_id))


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------


class MessageReplica(ReplicaManager):
    """Chat messages. Append-mostly: inserts and deletes, never updates."""

    family = "messages"
    collections = (MESSAGES,)
    primary = MESSAGES
    event_mask = frozenset({INSERT, DELETE})
    loader_class = MessageSnapshotLoader
    row_models = {MESSAGES: ChatMessage}

    def list(self, channel: ChatChannel | None = None) -> list[ChatMessage]:
        messages = super().list()
        if channel is None:
            return messages
        return [m for m in messages if m.channel == channel]

    async def _prepare(self, event: ChangeEvent) -> ChangeEvent | None:
        if event.kind == INSERT:
            sender_id = event.new.get("sender_id")
            name = self.resolver.sender_name(sender_id)
            if name is None and sender_id is not None:
                name = await self.resolver.refresh_sender(sender_id)
            event.new = {**event.new, "sender_name": name or self.resolver.unknown_name}
        return await super()._prepare(event)

    def refresh_sender_names(self) -> None:
        """
        Re-apply indexed sender names to cached messages, so a message that
        arrived before its sender's directory row (or before a rename)
        catches up. Driven by the facade on user directory changes.
        """
        result = merge_sender_names(self._state, self.resolver.known_names())
        if result.applied:
            self._state = result.collection
            self._notify()

    def _create_request(self) -> type[BaseModel]:
        return SendMessageRequest

    def _update_request(self) -> type[BaseModel]:
        raise MutationError("messages.update", StoreError("messages are immutable", collection=MESSAGES))

    async def send_message(self, content: str, channel: ChatChannel, sender_id: str) -> dict[str, Any]:
        return await self.create({"content": content, "channel": channel, "sender_id": str(sender_id)})


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


class PersonReplica(ReplicaManager):
    """
    The user directory with roles joined on. Read-only.

    Role records are watched only to keep the denormalized role current:
    a role event updates the join index, then patches the affected persons.
    """

    family = "users"
    collections = (USERS, USER_ROLES)
    primary = USERS
    loader_class = PersonSnapshotLoader
    row_models = {USERS: Person, USER_ROLES: RoleAssignment}

    def _find(self, state: dict[str, Any], event: ChangeEvent) -> dict[str, Any] | None:
        if event.collection == USER_ROLES:
            return None
        return super()._find(state, event)

    def by_user_id(self, user_id: str) -> Person | None:
        for person in self.list():
            if person.user_id == str(user_id):
                return person
        return None

    async def _prepare(self, event: ChangeEvent) -> ChangeEvent | None:
        if event.collection == USERS and event.kind == INSERT:
            user_id = event.new.get("user_id")
            if user_id is not None and not self.resolver.has_role(user_id):
                await self.resolver.refresh_role(user_id)
            event.new = {**event.new, "role": self.resolver.resolve_role(user_id)}
        return await super()._prepare(event)

    def _merge(self, state: dict[str, Any], event: ChangeEvent) -> MergeResult:
        if event.collection == USER_ROLES:
            if event.kind == DELETE:
                owner = self.resolver.forget_role(event.old_id)
                affected = [owner] if owner is not None else []
            else:
                affected = self.resolver.note_role(event.new or {})
            result = MergeResult(collection=state, applied=False)
            for user_id in affected:
                patched = merge_role(result.collection, user_id, self.resolver.resolve_role(user_id))
                if patched.applied:
                    result = patched
            return result

        if event.kind == DELETE:
            self.resolver.forget_person(event.old_id)
        elif event.new:
            self.resolver.note_person(event.new)
        return merge(state, event)

    async def delete_by_id(self, record_id: str) -> None:
        raise MutationError("users.delete", StoreError("users are read-only", collection=USERS))
