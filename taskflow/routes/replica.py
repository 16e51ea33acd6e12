"""
Replica control routes.

POST /api/{family}/refetch re-runs a family's snapshot load.
WS /ws pushes {"type": "changed", "family": ...} after every replica change
so clients know what to re-read. Incoming frames are ignored.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from taskflow.errors import LoadError
from taskflow.routes.deps import get_facade
from taskflow.services.data_facade import DataFacade

logger = logging.getLogger(__name__)

router = APIRouter(tags=["replica"])


@router.post("/api/{family}/refetch", status_code=200)
async def refetch(family: str, facade: DataFacade = Depends(get_facade)) -> dict:
    try:
        manager = facade.family(family)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown family: {family}") from None
    try:
        await manager.refetch()
    except LoadError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return {"family": family, "version": manager.loaded_version}


@router.websocket("/ws")
async def changes_ws(websocket: WebSocket):
    await websocket.accept()
    facade: DataFacade = websocket.app.state.facade
    queue: asyncio.Queue[str] = asyncio.Queue()
    unsubscribe = facade.subscribe_changes(queue.put_nowait)

    async def push_changes() -> None:
        while True:
            family = await queue.get()
            await websocket.send_json({"type": "changed", "family": family})

    await websocket.send_json({"type": "ready", "loading": facade.loading})
    sender = asyncio.create_task(push_changes())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("ws: client disconnected")
    finally:
        unsubscribe()
        sender.cancel()
