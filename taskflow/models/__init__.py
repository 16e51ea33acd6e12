"""
Pydantic models for Taskflow.

All record shapes defined here. No imports from repos or services.
"""

from taskflow.models.message import ChatChannel, ChatMessage, SendMessageRequest
from taskflow.models.person import Person, Role, RoleAssignment
from taskflow.models.task import (
    AddSubItemRequest,
    CreateSubItemRequest,
    CreateTaskRequest,
    Priority,
    SubItem,
    ToggleSubItemRequest,
    UpdateSubItemRequest,
    UpdateTaskRequest,
    WorkItem,
)

__all__ = [
    # Task models
    "Priority",
    "WorkItem",
    "SubItem",
    "CreateTaskRequest",
    "UpdateTaskRequest",
    "CreateSubItemRequest",
    "UpdateSubItemRequest",
    "AddSubItemRequest",
    "ToggleSubItemRequest",
    # Chat models
    "ChatChannel",
    "ChatMessage",
    "SendMessageRequest",
    # Directory models
    "Role",
    "Person",
    "RoleAssignment",
]
