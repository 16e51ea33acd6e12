"""
Replica Kernel -- Event Construction

Factory functions for well-formed change events, and the parser that turns
raw change-feed payloads into ChangeEvents.

The feed speaks two dialects:
  {"kind": "UPDATE", "new": {...}, "oldId": "t1"}                 (contract form)
  {"eventType": "UPDATE", "new": {...}, "old": {"id": "t1"}}      (trigger form)
Both parse to the same ChangeEvent.
"""

from __future__ import annotations

from typing import Any

from replica.kernel.types import DELETE, EVENT_KINDS, INSERT, UPDATE, ChangeEvent


def make_insert(collection: str, record: dict[str, Any], *, sequence: int = 0) -> ChangeEvent:
    """INSERT carrying a full row."""
    return ChangeEvent(collection=collection, kind=INSERT, new=dict(record), sequence=sequence)


def make_update(collection: str, patch: dict[str, Any], *, sequence: int = 0) -> ChangeEvent:
    """
    UPDATE carrying a patch. The patch must include `id`; every other key
    overwrites the matching field on the existing record.
    """
    return ChangeEvent(
        collection=collection,
        kind=UPDATE,
        new=dict(patch),
        old_id=str(patch["id"]) if patch.get("id") is not None else None,
        sequence=sequence,
    )


def make_delete(collection: str, record_id: str, *, sequence: int = 0) -> ChangeEvent:
    """DELETE carrying only the removed row's id."""
    return ChangeEvent(collection=collection, kind=DELETE, old_id=str(record_id), sequence=sequence)


def parse_payload(collection: str, payload: dict[str, Any]) -> ChangeEvent:
    """
    Build a ChangeEvent from a raw feed payload.

    Raises ValueError when the payload has no recognizable kind, or lacks the
    row (INSERT/UPDATE) or id (DELETE) its kind requires. The subscriber logs
    and skips such payloads.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"payload must be an object, got {type(payload).__name__}")

    kind = payload.get("kind") or payload.get("eventType") or payload.get("type")
    if isinstance(kind, str):
        kind = kind.upper()
    if kind not in EVENT_KINDS:
        raise ValueError(f"unknown change kind: {kind!r}")

    new = payload.get("new") or payload.get("record")
    if new is not None and not isinstance(new, dict):
        raise ValueError("'new' must be an object")

    old_id = payload.get("oldId") or payload.get("old_id")
    old = payload.get("old") or payload.get("old_record")
    if old_id is None and isinstance(old, dict):
        old_id = old.get("id")

    if kind in (INSERT, UPDATE):
        if not new or new.get("id") is None:
            raise ValueError(f"{kind} payload carries no row id")
        if old_id is None:
            old_id = new["id"]
    elif old_id is None:
        raise ValueError("DELETE payload carries no old id")

    return ChangeEvent(
        collection=payload.get("table") or collection,
        kind=kind,
        new=dict(new) if new else None,
        old_id=str(old_id) if old_id is not None else None,
    )
