from __future__ import annotations

import base64
import binascii
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from remote_tasks.server.errors import APIError
from remote_tasks.server.schemas import AppendLogRequest, CreateTaskRequest, UpdateTaskRequest
from remote_tasks.taskqueue.codec import chunk_to_payload, task_to_payload
from remote_tasks.taskqueue.models import LogChunk, LogEntry, NewTask, Task, TaskStatus
from remote_tasks.taskqueue.repository import SqlQueueStore

router = APIRouter()


def get_store(request: Request) -> SqlQueueStore:
    return request.app.state.store


@router.get("/tags")
def list_tags(store: SqlQueueStore = Depends(get_store)) -> list[str]:
    return store.list_tags()


@router.get("/tasks")
def list_tasks(
    tag: str | None = Query(default=None),
    status: TaskStatus | None = Query(default=None),
    store: SqlQueueStore = Depends(get_store),
) -> list[dict[str, Any]]:
    return [task_to_payload(task) for task in store.list_tasks(tag=tag, status=status)]


@router.post("/tasks", status_code=201)
def create_task(
    body: CreateTaskRequest,
    store: SqlQueueStore = Depends(get_store),
) -> dict[str, Any]:
    task = store.submit(NewTask(tag=body.tag, command=list(body.command)))
    return task_to_payload(task)


@router.delete("/tasks")
def delete_tasks(
    tag: str | None = Query(default=None),
    status: TaskStatus | None = Query(default=None),
    store: SqlQueueStore = Depends(get_store),
) -> dict[str, int]:
    return {"deleted": store.delete_tasks(tag=tag, status=status)}


@router.post("/tasks/claim")
def claim_next(
    tag: str = Query(min_length=1),
    store: SqlQueueStore = Depends(get_store),
) -> dict[str, Any] | None:
    task = store.claim_next(tag)
    return task_to_payload(task) if task is not None else None


@router.get("/tasks/{task_id}")
def get_task(task_id: int, store: SqlQueueStore = Depends(get_store)) -> dict[str, Any]:
    return task_to_payload(store.get_task(task_id))


@router.put("/tasks/{task_id}")
def update_task(
    task_id: int,
    body: UpdateTaskRequest,
    store: SqlQueueStore = Depends(get_store),
) -> dict[str, Any]:
    task = Task(
        id=task_id,
        tag=body.tag,
        status=body.status,
        command=list(body.command),
        exit_code=body.exit_code,
        last_heartbeat=body.last_heartbeat,
    )
    updated = store.update(task, expected_revision=body.expected_revision)
    return task_to_payload(updated)


@router.delete("/tasks/{task_id}")
def delete_task(task_id: int, store: SqlQueueStore = Depends(get_store)) -> dict[str, bool]:
    store.delete_task(task_id)
    return {"ok": True}


@router.post("/tasks/{task_id}/logs", status_code=201)
def append_log(
    task_id: int,
    body: AppendLogRequest,
    store: SqlQueueStore = Depends(get_store),
) -> dict[str, Any]:
    entries: list[LogEntry] = []
    for index, entry in enumerate(body.entries):
        try:
            data = base64.b64decode(entry.data, validate=True)
        except (binascii.Error, ValueError) as error:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message="Log entry data must be base64.",
                details={"errors": [{"field": f"entries.{index}.data", "message": str(error)}]},
            ) from error
        entries.append(LogEntry(stream=entry.stream, data=data))
    chunk = store.append_log(task_id, LogChunk(timestamp=body.timestamp, entries=entries))
    return chunk_to_payload(chunk)


@router.get("/tasks/{task_id}/logs")
def fetch_logs(task_id: int, store: SqlQueueStore = Depends(get_store)) -> list[dict[str, Any]]:
    return [chunk_to_payload(chunk) for chunk in store.fetch_logs(task_id)]
