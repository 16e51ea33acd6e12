"""Task and sub-item routes -- list, create, update, toggle, delete."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from taskflow.errors import MutationError
from taskflow.models import (
    AddSubItemRequest,
    CreateTaskRequest,
    ToggleSubItemRequest,
    UpdateSubItemRequest,
    UpdateTaskRequest,
)
from taskflow.routes.deps import accepted, get_facade, mutation_failed
from taskflow.services.data_facade import DataFacade

router = APIRouter(prefix="/api", tags=["tasks"])


@router.get("/tasks", status_code=200)
async def list_tasks(facade: DataFacade = Depends(get_facade)) -> dict:
    """All visible tasks with their sub-items attached."""
    return {
        "loading": facade.tasks.loading,
        "items": [t.model_dump(mode="json") for t in facade.tasks.list()],
    }


@router.get("/tasks/{task_id}", status_code=200)
async def get_task(task_id: str, facade: DataFacade = Depends(get_facade)) -> dict:
    task = facade.tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    return task.model_dump(mode="json")


@router.post("/tasks", status_code=202)
async def create_task(req: CreateTaskRequest, facade: DataFacade = Depends(get_facade)) -> dict:
    try:
        row = await facade.tasks.create_task(req)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.patch("/tasks/{task_id}", status_code=202)
async def update_task(
    task_id: str,
    req: UpdateTaskRequest,
    facade: DataFacade = Depends(get_facade),
) -> dict:
    try:
        row = await facade.tasks.update_task(task_id, req)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.delete("/tasks/{task_id}", status_code=202)
async def delete_task(task_id: str, facade: DataFacade = Depends(get_facade)) -> dict:
    """Deletes the task; the store removes its sub-items with it."""
    try:
        await facade.delete_task(task_id)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted()


@router.post("/tasks/{task_id}/subtasks", status_code=202)
async def add_sub_item(
    task_id: str,
    req: AddSubItemRequest,
    facade: DataFacade = Depends(get_facade),
) -> dict:
    try:
        row = await facade.tasks.add_sub_item(task_id, **req.model_dump())
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.patch("/subtasks/{sub_id}", status_code=202)
async def update_sub_item(
    sub_id: str,
    req: UpdateSubItemRequest,
    facade: DataFacade = Depends(get_facade),
) -> dict:
    try:
        row = await facade.tasks.update_sub_item(sub_id, req)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.post("/subtasks/{sub_id}/toggle", status_code=202)
async def toggle_sub_item(
    sub_id: str,
    req: ToggleSubItemRequest,
    facade: DataFacade = Depends(get_facade),
) -> dict:
    try:
        row = await facade.tasks.toggle_sub_item(sub_id, req.completed)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted(row)


@router.delete("/subtasks/{sub_id}", status_code=202)
async def remove_sub_item(sub_id: str, facade: DataFacade = Depends(get_facade)) -> dict:
    try:
        await facade.tasks.remove_sub_item(sub_id)
    except MutationError as e:
        raise mutation_failed(e) from e
    return accepted()
