"""User directory models."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

Role = Literal["admin", "employee", "client"]


class Person(BaseModel):
    """A row in the users table with the role from user_roles joined on."""

    id: str
    user_id: str
    name: str
    email: str
    avatar: str | None = None
    contact: str | None = None
    representative: str | None = None
    role: Role = "client"
    created_at: datetime | None = None


class RoleAssignment(BaseModel):
    """A row in the user_roles table."""

    id: str
    user_id: str
    role: Role
