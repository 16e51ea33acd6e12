"""
Replica Kernel -- Merger

Pure function: (collection, event) → MergeResult
No side effects. No IO. Deterministic.

Given the same snapshot and the same sequence of change events, produces the
same collection every time. The change feed is at-least-once and only ordered
within one subscription, so every rule here is idempotent:

  INSERT  absent id → append. Present id → applied like an UPDATE.
  UPDATE  present id → shallow field overwrite. Absent id → dropped, never
          synthesized from a partial patch.
  DELETE  present id → removed. Absent id → no-op.

Two state shapes exist:

  collection = {"records": {id: row}, "_sequence": int}
      messages, users. Dict order is arrival order.

  task tree  = {"tasks": {id: task_row}, "orphans": {task_id: [sub_row]},
                "_sequence": int}
      tasks + subtasks merged as one family. Each task_row carries its
      sub-items under "sub_items" in insertion order. Sub-items whose parent
      is unknown wait in "orphans" and are adopted when the parent arrives.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from replica.kernel.types import (
    CASCADE_DROP,
    DELETE,
    DELETE_UNKNOWN,
    DUPLICATE_INSERT,
    INSERT,
    MISSING_ID,
    ORPHAN_CHILD,
    ORPHANS_ADOPTED,
    SUBTASKS,
    TASKS,
    UPDATE,
    UPDATE_BEFORE_INSERT,
    WRONG_COLLECTION,
    ChangeEvent,
    MergeAnomaly,
    MergeResult,
    timestamp_key,
)

SUB_ITEMS = "sub_items"

# ---------------------------------------------------------------------------
# Empty states and bulk construction
# ---------------------------------------------------------------------------


def empty_collection() -> dict[str, Any]:
    """A flat collection with zero records."""
    return {"records": {}, "_sequence": 0}


def empty_task_tree() -> dict[str, Any]:
    """A task tree with zero tasks and no pending orphans."""
    return {"tasks": {}, "orphans": {}, "_sequence": 0}


def collection_from_rows(rows: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """
    Build a flat collection from bulk-read rows, keeping row order.
    Rows without an id are skipped.
    """
    snap = empty_collection()
    for row in rows:
        if row.get("id") is None:
            continue
        snap["records"][str(row["id"])] = dict(row)
    return snap


def task_tree_from_rows(
    task_rows: Iterable[dict[str, Any]],
    sub_rows: Iterable[dict[str, Any]],
) -> dict[str, Any]:
    """
    Build a task tree from bulk-read task and sub-item rows.

    Sub-items are grouped under their parent by task_id, in row order.
    Sub-items whose parent is not in task_rows land in the orphan bucket.
    """
    snap = empty_task_tree()
    for row in task_rows:
        if row.get("id") is None:
            continue
        _task_insert(snap, ChangeEvent(collection=TASKS, kind=INSERT, new=row))
    for row in sub_rows:
        if row.get("id") is None:
            continue
        _sub_insert(snap, ChangeEvent(collection=SUBTASKS, kind=INSERT, new=row))
    snap["_sequence"] = 0
    return snap


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def merge(collection: dict[str, Any], event: ChangeEvent) -> MergeResult:
    """
    Apply one change event to a flat collection (messages, users).

    Pure function. The input collection is never modified; the returned
    collection is a new dict whenever the event is applied.
    """
    if event.record_id is None:
        return _skip(collection, MISSING_ID, f"{event.kind} event carries no id")

    handler = _FLAT_HANDLERS[event.kind]
    snap = copy.deepcopy(collection)
    return handler(snap, event)


def merge_task_tree(tree: dict[str, Any], event: ChangeEvent) -> MergeResult:
    """
    Apply one change event from either the tasks or the subtasks feed.

    Both feeds mutate the same tree so that a task deletion and the removal
    of its children happen in one step, with no visible intermediate state.
    """
    handler = _TREE_HANDLERS.get((event.collection, event.kind))
    if handler is None:
        return _skip(tree, WRONG_COLLECTION, f"task tree cannot merge '{event.collection}' events")
    if event.record_id is None:
        return _skip(tree, MISSING_ID, f"{event.kind} event carries no id")

    snap = copy.deepcopy(tree)
    return handler(snap, event)


def merge_role(collection: dict[str, Any], user_id: str, role: str) -> MergeResult:
    """
    Patch the denormalized role onto every person row with this user_id.
    Not applied when no row matches or every match already has the role.
    """
    snap = copy.deepcopy(collection)
    changed = False
    for record in snap["records"].values():
        if str(record.get("user_id")) == str(user_id) and record.get("role") != role:
            record["role"] = role
            changed = True
    if not changed:
        return MergeResult(collection=collection, applied=False)
    _inc(snap)
    return _ok(snap)


def merge_sender_names(collection: dict[str, Any], names: Mapping[str, str]) -> MergeResult:
    """
    Patch the denormalized sender name onto every message whose sender_id
    has an entry in names. Senders missing from names keep their name.
    """
    snap = copy.deepcopy(collection)
    changed = False
    for record in snap["records"].values():
        name = names.get(str(record.get("sender_id")))
        if name is not None and record.get("sender_name") != name:
            record["sender_name"] = name
            changed = True
    if not changed:
        return MergeResult(collection=collection, applied=False)
    _inc(snap)
    return _ok(snap)


def merge_all(
    state: dict[str, Any],
    events: Iterable[ChangeEvent],
    merger: Callable[[dict[str, Any], ChangeEvent], MergeResult] = merge,
) -> dict[str, Any]:
    """
    Apply a sequence of events and return the final state.
    Dropped events are skipped; anomalies are discarded.
    """
    for event in events:
        result = merger(state, event)
        if result.applied:
            state = result.collection
    return state


def list_records(collection: dict[str, Any], order_by: str | None = None) -> list[dict[str, Any]]:
    """
    Records in visible order: arrival order, or stable-sorted by a timestamp
    column so ties keep arrival order.
    """
    records = list(collection["records"].values())
    if order_by is not None:
        records.sort(key=lambda r: timestamp_key(r.get(order_by)))
    return records


def list_tasks(tree: dict[str, Any]) -> list[dict[str, Any]]:
    """Visible tasks, each with its attached sub_items. Orphans are never listed."""
    return list(tree["tasks"].values())


def find_sub_item(tree: dict[str, Any], sub_id: str) -> dict[str, Any] | None:
    """Locate a sub-item by id among attached children and orphans."""
    found = _locate_sub(tree, sub_id)
    if found is None:
        return None
    container, index, _ = found
    return container[index]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ok(snap: dict, anomalies: list[MergeAnomaly] | None = None) -> MergeResult:
    return MergeResult(collection=snap, applied=True, anomalies=anomalies or [])


def _skip(snap: dict, code: str, message: str, **details: Any) -> MergeResult:
    return MergeResult(
        collection=snap,
        applied=False,
        anomalies=[MergeAnomaly(code=code, message=message, details=details or None)],
    )


def _inc(snap: dict) -> int:
    """Increment the change counter and return the new value."""
    snap["_sequence"] += 1
    return snap["_sequence"]


def _patch(record: dict, patch: dict[str, Any], *, exclude: tuple[str, ...] = ()) -> None:
    """Shallow merge: fields present in the patch win, the rest survive."""
    for key, value in patch.items():
        if key in exclude:
            continue
        record[key] = value


# ---------------------------------------------------------------------------
# Flat collection handlers
# ---------------------------------------------------------------------------


def _flat_insert(snap: dict, event: ChangeEvent) -> MergeResult:
    record_id = event.record_id
    existing = snap["records"].get(record_id)
    if existing is not None:
        _patch(existing, event.new)
        _inc(snap)
        return _ok(snap, [MergeAnomaly(DUPLICATE_INSERT, f"'{record_id}' already present, applied as update")])

    snap["records"][record_id] = dict(event.new)
    _inc(snap)
    return _ok(snap)


def _flat_update(snap: dict, event: ChangeEvent) -> MergeResult:
    record_id = event.record_id
    existing = snap["records"].get(record_id)
    if existing is None:
        return _skip(snap, UPDATE_BEFORE_INSERT, f"'{record_id}' not present, update dropped")

    _patch(existing, event.new or {})
    _inc(snap)
    return _ok(snap)


def _flat_delete(snap: dict, event: ChangeEvent) -> MergeResult:
    record_id = event.record_id
    if snap["records"].pop(record_id, None) is None:
        return _skip(snap, DELETE_UNKNOWN, f"'{record_id}' not present, delete ignored")
    _inc(snap)
    return _ok(snap)


# ---------------------------------------------------------------------------
# Task tree handlers
# ---------------------------------------------------------------------------


def _locate_sub(snap: dict, sub_id: str) -> tuple[list, int, str | None] | None:
    """
    Find a sub-item. Returns (container, index, orphan_key) where orphan_key
    is the bucket key for orphans and None for attached children.
    """
    for task in snap["tasks"].values():
        for i, sub in enumerate(task[SUB_ITEMS]):
            if str(sub.get("id")) == sub_id:
                return task[SUB_ITEMS], i, None
    for parent_id, bucket in snap["orphans"].items():
        for i, sub in enumerate(bucket):
            if str(sub.get("id")) == sub_id:
                return bucket, i, parent_id
    return None


def _place_sub(snap: dict, record: dict) -> MergeAnomaly | None:
    """Attach a sub-item to its parent, or park it in the orphan bucket."""
    parent_id = str(record.get("task_id"))
    parent = snap["tasks"].get(parent_id)
    if parent is not None:
        parent[SUB_ITEMS].append(record)
        return None
    snap["orphans"].setdefault(parent_id, []).append(record)
    return MergeAnomaly(
        ORPHAN_CHILD,
        f"sub-item '{record.get('id')}' waits for unknown task '{parent_id}'",
        {"task_id": parent_id},
    )


def _task_insert(snap: dict, event: ChangeEvent) -> MergeResult:
    task_id = event.record_id
    existing = snap["tasks"].get(task_id)
    if existing is not None:
        _patch(existing, event.new, exclude=(SUB_ITEMS,))
        _inc(snap)
        return _ok(snap, [MergeAnomaly(DUPLICATE_INSERT, f"task '{task_id}' already present, applied as update")])

    record = {k: v for k, v in event.new.items() if k != SUB_ITEMS}
    adopted = snap["orphans"].pop(task_id, [])
    record[SUB_ITEMS] = adopted
    snap["tasks"][task_id] = record
    _inc(snap)

    if adopted:
        return _ok(snap, [MergeAnomaly(
            ORPHANS_ADOPTED,
            f"task '{task_id}' adopted {len(adopted)} pending sub-item(s)",
            {"sub_ids": [str(s.get("id")) for s in adopted]},
        )])
    return _ok(snap)


def _task_update(snap: dict, event: ChangeEvent) -> MergeResult:
    task_id = event.record_id
    existing = snap["tasks"].get(task_id)
    if existing is None:
        return _skip(snap, UPDATE_BEFORE_INSERT, f"task '{task_id}' not present, update dropped")

    _patch(existing, event.new or {}, exclude=(SUB_ITEMS,))
    _inc(snap)
    return _ok(snap)


def _task_delete(snap: dict, event: ChangeEvent) -> MergeResult:
    task_id = event.record_id
    removed = snap["tasks"].pop(task_id, None)
    pending = snap["orphans"].pop(task_id, None)

    if removed is None and pending is None:
        return _skip(snap, DELETE_UNKNOWN, f"task '{task_id}' not present, delete ignored")

    _inc(snap)
    dropped = (removed or {}).get(SUB_ITEMS, []) + (pending or [])
    if dropped:
        return _ok(snap, [MergeAnomaly(
            CASCADE_DROP,
            f"task '{task_id}' removed with {len(dropped)} sub-item(s)",
            {"sub_ids": [str(s.get("id")) for s in dropped]},
        )])
    return _ok(snap)


def _sub_insert(snap: dict, event: ChangeEvent) -> MergeResult:
    sub_id = event.record_id
    if _locate_sub(snap, sub_id) is not None:
        result = _sub_update(snap, event)
        result.anomalies.insert(0, MergeAnomaly(DUPLICATE_INSERT, f"sub-item '{sub_id}' already present, applied as update"))
        return result

    if event.new.get("task_id") is None:
        return _skip(snap, ORPHAN_CHILD, f"sub-item '{sub_id}' has no task_id, dropped")

    anomaly = _place_sub(snap, dict(event.new))
    _inc(snap)
    return _ok(snap, [anomaly] if anomaly else None)


def _sub_update(snap: dict, event: ChangeEvent) -> MergeResult:
    sub_id = event.record_id
    found = _locate_sub(snap, sub_id)
    if found is None:
        return _skip(snap, UPDATE_BEFORE_INSERT, f"sub-item '{sub_id}' not present, update dropped")

    container, index, orphan_key = found
    record = container[index]
    old_parent = str(record.get("task_id"))
    _patch(record, event.new or {})
    _inc(snap)

    if str(record.get("task_id")) == old_parent:
        return _ok(snap)

    # Re-parented: move it, possibly into or out of the orphan bucket.
    del container[index]
    if orphan_key is not None and not container:
        del snap["orphans"][orphan_key]
    anomaly = _place_sub(snap, record)
    return _ok(snap, [anomaly] if anomaly else None)


def _sub_delete(snap: dict, event: ChangeEvent) -> MergeResult:
    sub_id = event.record_id
    found = _locate_sub(snap, sub_id)
    if found is None:
        return _skip(snap, DELETE_UNKNOWN, f"sub-item '{sub_id}' not present, delete ignored")

    container, index, orphan_key = found
    del container[index]
    if orphan_key is not None and not container:
        del snap["orphans"][orphan_key]
    _inc(snap)
    return _ok(snap)


# ---------------------------------------------------------------------------
# Handler dispatch tables
# ---------------------------------------------------------------------------

_FLAT_HANDLERS: dict[str, Any] = {
    INSERT: _flat_insert,
    UPDATE: _flat_update,
    DELETE: _flat_delete,
}

_TREE_HANDLERS: dict[tuple[str, str], Any] = {
    (TASKS, INSERT): _task_insert,
    (TASKS, UPDATE): _task_update,
    (TASKS, DELETE): _task_delete,
    (SUBTASKS, INSERT): _sub_insert,
    (SUBTASKS, UPDATE): _sub_update,
    (SUBTASKS, DELETE): _sub_delete,
}
