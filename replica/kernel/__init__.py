"""
Replica Kernel -- the pure merge engine.

Three components:
  types   -- change events, merge results, collection names
  events  -- event factories and feed payload parsing
  merger  -- (collection, event) → collection  (pure, deterministic)

No IO lives here. Snapshot loading, subscriptions, and joins are the
service layer's job (taskflow.services).
"""

from replica.kernel.events import make_delete, make_insert, make_update, parse_payload
from replica.kernel.merger import (
    collection_from_rows,
    empty_collection,
    empty_task_tree,
    list_records,
    list_tasks,
    merge,
    merge_all,
    merge_role,
    merge_sender_names,
    merge_task_tree,
    task_tree_from_rows,
)
from replica.kernel.types import ChangeEvent, MergeAnomaly, MergeResult

__all__ = [
    "ChangeEvent",
    "MergeAnomaly",
    "MergeResult",
    "make_insert",
    "make_update",
    "make_delete",
    "parse_payload",
    "merge",
    "merge_all",
    "merge_role",
    "merge_sender_names",
    "merge_task_tree",
    "empty_collection",
    "empty_task_tree",
    "collection_from_rows",
    "task_tree_from_rows",
    "list_records",
    "list_tasks",
]
