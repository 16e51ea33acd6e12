"""Chat message models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ChatChannel = Literal["team", "client"]


class ChatMessage(BaseModel):
    """A row in the messages table with the sender's name joined on."""

    id: str
    sender_id: str
    sender_name: str = "Unknown"
    content: str
    channel: ChatChannel = "team"
    created_at: datetime | None = None


class SendMessageRequest(BaseModel):
    """What the UI sends to post a chat message."""

    model_config = {"extra": "forbid"}

    content: str = Field(min_length=1, max_length=10000)
    channel: ChatChannel = "team"
    sender_id: str

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()
