"""Chat and user directory routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from taskflow.errors import MutationError
from taskflow.models import ChatChannel, SendMessageRequest
from taskflow.routes.deps import accepted, get_facade, mutation_failed
from taskflow.services.data_facade import DataFacade

router = APIRouter(prefix="/api", tags=["chat"])


@router.get("/messages", status_code=200)
async def list_messages(
    channel: ChatChannel | None = None,
    facade: DataFacade = Depends(get_facade),
) -> dict:
    """Messages in created_at order, optionally for one channel."""
    return {
        "loading": facade.messages.loading,
        "items": [m.model_dump(mode="json") for m in facade.messages.list(channel=channel)],
    }


@router.post("/messages", status_code=202)
async def send_message(req: SendMessageRequest, facade: DataFacade = Depends(get_facade)) -> dict:
    try:
        row = await facade.messages.send_message(req.content, req.channel, req.sender_id)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.get("/users", status_code=200)
async def list_users(facade: DataFacade = Depends(get_facade)) -> dict:
    return {
        "loading": facade.users.loading,
        "items": [p.model_dump(mode="json") for p in facade.users.list()],
    }
