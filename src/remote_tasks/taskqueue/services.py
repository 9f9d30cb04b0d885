"""Use-case services for the task queue."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from remote_tasks.config import Settings
from remote_tasks.taskqueue.http_store import HttpQueueStore
from remote_tasks.taskqueue.models import LogChunk, LogEntry, NewTask, Task, TaskStatus, requeued
from remote_tasks.taskqueue.replay import replay
from remote_tasks.taskqueue.repository import SqlQueueStore
from remote_tasks.taskqueue.store import QueueStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeContext:
    """Settings and the store they resolve to, built once per invocation."""

    settings: Settings
    store: QueueStore


@dataclass(slots=True)
class ReplayResult:
    """Replayed entries together with the chunk count they were taken from."""

    task: Task
    chunks: list[LogChunk]
    position: int
    entries: list[LogEntry]


def build_store(settings: Settings) -> QueueStore:
    """Remote HTTP store when a URL is configured, local SQLite otherwise."""

    store_settings = settings.store
    if store_settings.url:
        return HttpQueueStore(
            store_settings.url,
            username=store_settings.username,
            password=store_settings.password,
            timeout_seconds=store_settings.request_timeout_seconds,
        )
    store = SqlQueueStore(
        store_settings.db_path,
        sqlite_busy_timeout_ms=store_settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    return store


@contextmanager
def open_context(settings: Settings) -> Iterator[RuntimeContext]:
    settings.validate()
    store = build_store(settings)
    try:
        yield RuntimeContext(settings=settings, store=store)
    finally:
        store.close()


def submit_task(context: RuntimeContext, *, tag: str, command: Sequence[str]) -> Task:
    return context.store.submit(NewTask(tag=tag, command=list(command)))


def requeue_task(context: RuntimeContext, task_id: int) -> Task:
    """Return a task to ``pending`` from any status, keeping its logs.

    The write is guarded by the revision that was read, so a concurrent claim
    or final status write makes this fail with ``TaskConflictError`` instead of
    being silently overwritten.
    """

    task = context.store.get_task(task_id)
    updated = context.store.update(requeued(task), expected_revision=task.revision)
    logger.info("Task %s requeued from %s", task_id, task.status.value)
    return updated


def remove_task(context: RuntimeContext, task_id: int) -> None:
    context.store.delete_task(task_id)
    logger.info("Task %s removed", task_id)


def list_tasks(
    context: RuntimeContext,
    *,
    tag: str | None = None,
    status: TaskStatus | None = None,
) -> list[Task]:
    return context.store.list_tasks(tag=tag, status=status)


def list_tags(context: RuntimeContext) -> list[str]:
    return context.store.list_tags()


def clean_tasks(context: RuntimeContext, *, tag: str | None = None) -> int:
    """Delete finished tasks and their logs."""

    return context.store.delete_tasks(tag=tag, status=TaskStatus.DONE)


def reset_tasks(context: RuntimeContext, *, tag: str | None = None) -> int:
    """Delete every task, or every task of ``tag``, in any status."""

    return context.store.delete_tasks(tag=tag)


def replay_task_logs(
    context: RuntimeContext,
    task_id: int,
    *,
    position: int | None = None,
) -> ReplayResult:
    task = context.store.get_task(task_id)
    chunks = context.store.fetch_logs(task_id)
    entries = replay(chunks, position)
    return ReplayResult(
        task=task,
        chunks=chunks,
        position=len(chunks) if position is None else position,
        entries=entries,
    )
