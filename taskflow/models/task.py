"""Work item (task) and sub-item models."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Priority = Literal["high", "medium", "low"]


def _dedupe(ids: list[str]) -> list[str]:
    """Assignees are a set; keep first-seen order for display."""
    seen: dict[str, None] = {}
    for user_id in ids:
        seen.setdefault(str(user_id), None)
    return list(seen)


class SubItem(BaseModel):
    """A row in the subtasks table, as attached to its parent task."""

    id: str
    task_id: str
    title: str
    description: str | None = None
    completed: bool = False
    priority: Priority = "medium"
    due_date: date | None = None
    assignees: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("assignees")
    @classmethod
    def normalize_assignees(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class WorkItem(BaseModel):
    """A row in the tasks table plus its attached sub-items."""

    id: str
    title: str
    description: str | None = None
    progress: int = Field(default=0, ge=0, le=100)
    start_date: date | None = None
    due_date: date | None = None
    assignees: list[str] = Field(default_factory=list)
    priority: Priority = "medium"
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    sub_items: list[SubItem] = Field(default_factory=list)

    @field_validator("assignees")
    @classmethod
    def normalize_assignees(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @property
    def completed_sub_items(self) -> int:
        return sum(1 for s in self.sub_items if s.completed)


class CreateTaskRequest(BaseModel):
    """What the UI sends to create a task."""

    model_config = {"extra": "forbid"}

    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    progress: int = 0
    start_date: date | None = None
    due_date: date | None = None
    assignees: list[str] = Field(default_factory=list)
    priority: Priority = "medium"
    created_by: str | None = None

    @field_validator("progress")
    @classmethod
    def clamp_progress(cls, value: int) -> int:
        return max(0, min(100, value))

    @field_validator("assignees")
    @classmethod
    def normalize_assignees(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class UpdateTaskRequest(BaseModel):
    """A partial task update. Only the fields the caller set are sent."""

    model_config = {"extra": "forbid"}

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    progress: int | None = None
    start_date: date | None = None
    due_date: date | None = None
    assignees: list[str] | None = None
    priority: Priority | None = None

    @field_validator("progress")
    @classmethod
    def clamp_progress(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(0, min(100, value))

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreateSubItemRequest(BaseModel):
    """What the UI sends to add a sub-item to a task."""

    model_config = {"extra": "forbid"}

    task_id: str
    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    priority: Priority = "medium"
    due_date: date | None = None
    assignees: list[str] = Field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class UpdateSubItemRequest(BaseModel):
    """A partial sub-item update. Setting task_id moves it to another task."""

    model_config = {"extra": "forbid"}

    task_id: str | None = None
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    completed: bool | None = None
    priority: Priority | None = None
    due_date: date | None = None
    assignees: list[str] | None = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class AddSubItemRequest(BaseModel):
    """Body of POST /api/tasks/{id}/subtasks; the parent comes from the path."""

    model_config = {"extra": "forbid"}

    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    priority: Priority = "medium"
    due_date: date | None = None
    assignees: list[str] = Field(default_factory=list)


class ToggleSubItemRequest(BaseModel):
    """The sub-item's current state, as shown by the checkbox being clicked."""

    model_config = {"extra": "forbid"}

    completed: bool
