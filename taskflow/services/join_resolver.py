"""
Join resolver -- denormalized display fields for replica records.

Maps a user id to the sender name shown on chat messages and to the role
shown in the user directory. The index is primed from the bulk reads done by
the snapshot loaders and kept current from person and role change events,
so steady-state events need no remote call. A miss falls back to one point
lookup against the store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from replica.kernel.types import USER_ROLES, USERS
from taskflow.config import settings
from taskflow.errors import StoreError
from taskflow.repos.store import RemoteStore

logger = logging.getLogger(__name__)

# A user holding several role records shows the highest one.
ROLE_PRIORITY = ("admin", "employee", "client")


def _role_rank(role: str) -> int:
    return ROLE_PRIORITY.index(role) if role in ROLE_PRIORITY else len(ROLE_PRIORITY)


class JoinResolver:
    """Secondary index: user id → name, user id → role."""

    def __init__(
        self,
        store: RemoteStore,
        *,
        unknown_name: str | None = None,
        default_role: str | None = None,
    ):
        self.store = store
        self.unknown_name = unknown_name or settings.UNKNOWN_SENDER_NAME
        self.default_role = default_role or settings.DEFAULT_ROLE
        self.lookups = 0
        self._names: dict[str, str] = {}
        self._person_user: dict[str, str] = {}
        self._roles: dict[str, str] = {}
        self._role_records: dict[str, tuple[str, str]] = {}

    # -- reads ---------------------------------------------------------------

    def sender_name(self, user_id: Any) -> str | None:
        """Indexed name for a user id, or None on a miss."""
        return self._names.get(str(user_id))

    def resolve_sender_name(self, user_id: Any) -> str:
        return self._names.get(str(user_id)) or self.unknown_name

    def known_names(self) -> dict[str, str]:
        return dict(self._names)

    def has_role(self, user_id: Any) -> bool:
        return str(user_id) in self._roles

    def resolve_role(self, user_id: Any) -> str:
        """Indexed role for a user id; users with no role record are clients."""
        return self._roles.get(str(user_id), self.default_role)

    # -- bulk priming --------------------------------------------------------

    def prime_people(self, rows: Iterable[dict[str, Any]]) -> None:
        for row in rows:
            self.note_person(row)

    def prime_roles(self, rows: Iterable[dict[str, Any]]) -> None:
        for row in rows:
            self.note_role(row)

    def replace_people(self, rows: Iterable[dict[str, Any]]) -> None:
        """Rebuild the name index from a full directory read."""
        self._names.clear()
        self._person_user.clear()
        self.prime_people(rows)

    def replace_roles(self, rows: Iterable[dict[str, Any]]) -> None:
        """Rebuild the role index from a full read of role records."""
        self._roles.clear()
        self._role_records.clear()
        self.prime_roles(rows)

    # -- incremental maintenance ---------------------------------------------

    def note_person(self, row: dict[str, Any]) -> None:
        user_id = row.get("user_id")
        if user_id is None:
            return
        if row.get("id") is not None:
            self._person_user[str(row["id"])] = str(user_id)
        if row.get("name"):
            self._names[str(user_id)] = row["name"]

    def forget_person(self, person_id: str) -> None:
        user_id = self._person_user.pop(str(person_id), None)
        if user_id is not None:
            self._names.pop(user_id, None)

    def note_role(self, row: dict[str, Any]) -> list[str]:
        """
        Index one role record. Partial rows (update patches) fill the missing
        user or role from the record already indexed under the same id.
        Returns the user ids whose role may have changed: the previous owner
        too when the record moved to another user.
        """
        role_id = str(row["id"]) if row.get("id") is not None else None
        previous = self._role_records.get(role_id) if role_id is not None else None
        user_id = row.get("user_id") or (previous[0] if previous else None)
        role = row.get("role") or (previous[1] if previous else None)
        if user_id is None or role is None:
            return []

        user_id = str(user_id)
        self._role_records[role_id or f"{user_id}:{role}"] = (user_id, role)
        affected = [user_id]
        if previous is not None and previous[0] != user_id:
            affected.insert(0, previous[0])
        for uid in affected:
            self._recompute_role(uid)
        return affected

    def forget_role(self, role_id: str) -> str | None:
        """Drop a deleted role record and re-derive its user's role."""
        record = self._role_records.pop(str(role_id), None)
        if record is None:
            return None
        self._recompute_role(record[0])
        return record[0]

    def _recompute_role(self, user_id: str) -> None:
        held = [role for owner, role in self._role_records.values() if owner == user_id]
        if held:
            self._roles[user_id] = min(held, key=_role_rank)
        else:
            self._roles.pop(user_id, None)

    # -- point lookups -------------------------------------------------------

    async def refresh_sender(self, user_id: Any) -> str:
        """
        Look one sender up in the store and index the result.
        A failed lookup is logged and resolves to the unknown-sender name, so
        a message never waits on the directory.
        """
        self.lookups += 1
        try:
            rows = await self.store.read(USERS, {"user_id": str(user_id)})
        except StoreError as e:
            logger.warning("join_resolver: sender lookup failed user_id=%s: %s", user_id, e.message)
            return self.unknown_name
        self.prime_people(rows)
        return self.resolve_sender_name(user_id)

    async def refresh_role(self, user_id: Any) -> str:
        """Look one user's role up in the store and index the result."""
        self.lookups += 1
        try:
            rows = await self.store.read(USER_ROLES, {"user_id": str(user_id)})
        except StoreError as e:
            logger.warning("join_resolver: role lookup failed user_id=%s: %s", user_id, e.message)
            return self.resolve_role(user_id)
        self.prime_roles(rows)
        return self.resolve_role(user_id)
