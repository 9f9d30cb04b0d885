"""Domain models for the task queue and its log chunks."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from remote_tasks.taskqueue.errors import TaskValidationError


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(slots=True)
class NewTask:
    """Input payload for submitting a task."""

    tag: str
    command: list[str]
    status: TaskStatus = TaskStatus.PENDING


@dataclass(slots=True)
class Task:
    """Stored task record.

    ``exit_code`` is set if and only if ``status`` is ``done``. ``last_heartbeat``
    only carries meaning while the task is running.
    """

    id: int
    tag: str
    status: TaskStatus
    command: list[str]
    exit_code: int | None = None
    last_heartbeat: datetime | None = None
    revision: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def copy(self) -> Task:
        return replace(self, command=list(self.command))


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One captured piece of process output."""

    stream: LogStream
    data: bytes


@dataclass(slots=True)
class LogChunk:
    """One flushed batch of output entries, in capture order."""

    timestamp: datetime
    entries: list[LogEntry] = field(default_factory=list)
    id: int | None = None
    task_id: int | None = None


def is_stale(task: Task, *, now: datetime, threshold: timedelta) -> bool:
    """Advisory staleness: a running task whose heartbeat is older than ``threshold``."""

    if task.status != TaskStatus.RUNNING or task.last_heartbeat is None:
        return False
    return now - task.last_heartbeat > threshold


def display_status(task: Task, *, now: datetime, threshold: timedelta) -> str:
    if is_stale(task, now=now, threshold=threshold):
        return "stale"
    return task.status.value


def validate_new_task(payload: NewTask) -> None:
    """Raise ``TaskValidationError`` with field details when a submission is malformed."""

    errors: list[dict[str, str]] = []
    if not isinstance(payload.tag, str) or not payload.tag.strip():
        errors.append({"field": "tag", "message": "Tag must be a non-empty string."})
    if not isinstance(payload.command, list) or not payload.command:
        errors.append({"field": "command", "message": "Command must be a non-empty list."})
    elif not all(isinstance(part, str) for part in payload.command):
        errors.append({"field": "command", "message": "Command items must be strings."})
    elif not payload.command[0]:
        errors.append({"field": "command", "message": "Program name must not be empty."})
    if payload.status != TaskStatus.PENDING:
        errors.append({"field": "status", "message": "New tasks must be pending."})
    if errors:
        raise TaskValidationError("Invalid task submission.", errors=errors)


def validate_task_state(task: Task) -> None:
    """Enforce the ``exit_code`` set iff ``done`` invariant before a write."""

    errors: list[dict[str, str]] = []
    if not task.tag:
        errors.append({"field": "tag", "message": "Tag must be a non-empty string."})
    if not task.command:
        errors.append({"field": "command", "message": "Command must be a non-empty list."})
    if task.status == TaskStatus.DONE and task.exit_code is None:
        errors.append({"field": "exit_code", "message": "Done tasks must have an exit code."})
    if task.status != TaskStatus.DONE and task.exit_code is not None:
        errors.append(
            {"field": "exit_code", "message": "Only done tasks may carry an exit code."},
        )
    if errors:
        raise TaskValidationError("Invalid task state.", errors=errors)


def requeued(task: Task) -> Task:
    """Copy of ``task`` returned to pending with run outcome cleared."""

    result = task.copy()
    result.status = TaskStatus.PENDING
    result.exit_code = None
    result.last_heartbeat = None
    return result
