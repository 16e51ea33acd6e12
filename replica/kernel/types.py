"""
Replica Kernel -- Shared Types

Data classes used across events, merger, and the service layer.
These are the contracts that bind the kernel together.

Records inside the kernel are plain dicts keyed by column name, exactly as the
remote store hands them out. Validation into pydantic models happens at the
service boundary, never here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Collection names (remote tables)
# ---------------------------------------------------------------------------

TASKS = "tasks"
SUBTASKS = "subtasks"
MESSAGES = "messages"
USERS = "users"
USER_ROLES = "user_roles"

COLLECTIONS: set[str] = {TASKS, SUBTASKS, MESSAGES, USERS, USER_ROLES}


# ---------------------------------------------------------------------------
# Event kinds
# ---------------------------------------------------------------------------

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

EventKind = Literal["INSERT", "UPDATE", "DELETE"]

EVENT_KINDS: set[str] = {INSERT, UPDATE, DELETE}


# ---------------------------------------------------------------------------
# Anomaly codes
# ---------------------------------------------------------------------------

DUPLICATE_INSERT = "DUPLICATE_INSERT"
UPDATE_BEFORE_INSERT = "UPDATE_BEFORE_INSERT"
DELETE_UNKNOWN = "DELETE_UNKNOWN"
ORPHAN_CHILD = "ORPHAN_CHILD"
ORPHANS_ADOPTED = "ORPHANS_ADOPTED"
CASCADE_DROP = "CASCADE_DROP"
MISSING_ID = "MISSING_ID"
WRONG_COLLECTION = "WRONG_COLLECTION"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class ChangeEvent:
    """
    One typed change notification from the feed.

    INSERT and UPDATE carry `new` (a full row or a partial patch).
    DELETE carries only `old_id`. `sequence` is stamped by the subscriber in
    delivery order; 0 means "not delivered through a subscription" (tests,
    replays built by hand).
    """

    collection: str
    kind: EventKind
    new: dict[str, Any] | None = None
    old_id: str | None = None
    sequence: int = 0
    received_at: str = ""

    @property
    def record_id(self) -> str | None:
        """The id the event is about, whatever its kind."""
        if self.kind == DELETE:
            return self.old_id
        if self.new is not None and self.new.get("id") is not None:
            return str(self.new["id"])
        return self.old_id

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "collection": self.collection,
            "kind": self.kind,
            "sequence": self.sequence,
        }
        if self.new is not None:
            d["new"] = self.new
        if self.old_id is not None:
            d["oldId"] = self.old_id
        return d


@dataclass
class MergeAnomaly:
    """
    A non-fatal oddity met while merging (duplicate insert, update before
    insert, orphan child). The at-least-once feed makes these routine, so they
    are reported, never raised.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None


@dataclass
class MergeResult:
    """
    Result of merging one event into a collection.
    The merger never throws -- it always returns one of these.

    `applied` is False when the event left the collection unchanged
    (dropped update, delete of an unknown id).
    """

    collection: dict[str, Any]
    applied: bool
    anomalies: list[MergeAnomaly] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def timestamp_key(value: Any) -> datetime:
    """
    Comparable form of a row timestamp.

    Rows arrive with timestamps as datetimes (bulk reads) or as ISO strings of
    varying precision (JSON change payloads), so string comparison is not
    safe. Missing or unparseable values sort first.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value)
        except ValueError:
            return _EPOCH
    else:
        return _EPOCH
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts
