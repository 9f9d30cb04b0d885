"""Store protocol shared by the SQLite repository and the HTTP client."""

from __future__ import annotations

from typing import Protocol

from remote_tasks.taskqueue.models import LogChunk, NewTask, Task, TaskStatus


class QueueStore(Protocol):
    """Durable record of tasks and their log chunks."""

    def claim_next(self, tag: str) -> Task | None:
        """Atomically move the lowest-id pending task of ``tag`` to running."""

    def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
        """Overwrite the mutable fields of an existing task."""

    def append_log(self, task_id: int, chunk: LogChunk) -> LogChunk:
        """Persist a new chunk after all existing chunks of the task."""

    def fetch_logs(self, task_id: int) -> list[LogChunk]:
        """Chunks of a task ordered by id."""

    def get_task(self, task_id: int) -> Task:
        """Return one task or raise ``TaskNotFoundError``."""

    def list_tasks(
        self,
        *,
        tag: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        """Tasks ordered by id, optionally filtered."""

    def list_tags(self) -> list[str]:
        """Distinct tags in use."""

    def submit(self, payload: NewTask) -> Task:
        """Validate and create a pending task."""

    def delete_task(self, task_id: int) -> None:
        """Delete a task together with its log chunks."""

    def delete_tasks(self, *, tag: str | None = None, status: TaskStatus | None = None) -> int:
        """Bulk delete, returning the number of removed tasks."""

    def close(self) -> None:
        """Release underlying resources."""
