"""Controllers for task queue CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO

import rich_click as click

from remote_tasks.config import Settings
from remote_tasks.runner import AgentRunner
from remote_tasks.storage.common import utc_now
from remote_tasks.taskqueue.models import Task, TaskStatus, display_status
from remote_tasks.taskqueue.replay import format_debug_lines, write_replay
from remote_tasks.taskqueue.services import (
    clean_tasks,
    list_tags,
    list_tasks,
    open_context,
    remove_task,
    replay_task_logs,
    requeue_task,
    reset_tasks,
    submit_task,
)

STATUS_COLORS = {
    "done": "green",
    "running": "blue",
    "stale": "yellow",
}


@dataclass(slots=True)
class StoreTarget:
    """Global CLI options selecting the queue to talk to."""

    db_path: Path | None = None
    url: str | None = None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task submission."""

    target: StoreTarget
    tag: str | None
    command: tuple[str, ...]


@dataclass(slots=True)
class TaskIdsCommand:
    """CLI input for per-task operations (remove, requeue)."""

    target: StoreTarget
    task_ids: tuple[int, ...]


@dataclass(slots=True)
class ListTasksCommand:
    target: StoreTarget
    tag: str | None
    status: str | None


@dataclass(slots=True)
class RunTasksCommand:
    """CLI input for the agent runner."""

    target: StoreTarget
    tag: str | None
    repeat: bool
    echo_stdout: BinaryIO | None = None
    echo_stderr: BinaryIO | None = None


@dataclass(slots=True)
class TailCommand:
    """CLI input for log replay."""

    target: StoreTarget
    task_id: int
    position: int | None
    debug: bool
    stdout: BinaryIO
    stderr: BinaryIO


@dataclass(slots=True)
class DeleteTasksCommand:
    target: StoreTarget
    tag: str | None


class TaskCliController:
    """Coordinates queue, runner, and replay CLI operations."""

    def add(self, command: AddTaskCommand) -> list[str]:
        settings = _settings(command.target)
        tag = settings.resolve_tag(command.tag)
        with open_context(settings) as context:
            task = submit_task(context, tag=tag, command=command.command)
        return [f"Task created with ID: {task.id}"]

    def remove(self, command: TaskIdsCommand) -> list[str]:
        settings = _settings(command.target)
        lines: list[str] = []
        with open_context(settings) as context:
            for task_id in command.task_ids:
                remove_task(context, task_id)
                lines.append(f"Task removed with ID: {task_id}")
        return lines

    def requeue(self, command: TaskIdsCommand) -> list[str]:
        settings = _settings(command.target)
        lines: list[str] = []
        with open_context(settings) as context:
            for task_id in command.task_ids:
                requeue_task(context, task_id)
                lines.append(f"Task requeued with ID: {task_id}")
        return lines

    def tags(self, target: StoreTarget) -> list[str]:
        with open_context(_settings(target)) as context:
            return list_tags(context)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.target)
        status_filter = TaskStatus(command.status) if command.status else None
        with open_context(settings) as context:
            tasks = list_tasks(context, tag=command.tag, status=status_filter)

        threshold = timedelta(seconds=settings.runner.stale_threshold_seconds)
        now = utc_now()
        lines: list[str] = []
        for task in tasks:
            lines.extend(_render_task(task, status=display_status(task, now=now, threshold=threshold)))
        return lines

    def run(self, command: RunTasksCommand) -> list[str]:
        settings = _settings(command.target)
        tag = settings.resolve_tag(command.tag)
        with open_context(settings) as context:
            runner = AgentRunner(
                store=context.store,
                tag=tag,
                settings=settings.runner,
                echo_stdout=command.echo_stdout,
                echo_stderr=command.echo_stderr,
            )
            summary = runner.run_loop(repeat=command.repeat)

        lines: list[str] = []
        if summary.processed == 0 and summary.preparation_failures == 0:
            lines.append("No tasks to run")
        lines.append(
            "Runner summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} idle_polls={summary.idle_polls} "
            f"preparation_failures={summary.preparation_failures} "
            f"finalize_failures={summary.finalize_failures}",
        )
        return lines

    def tail(self, command: TailCommand) -> list[str]:
        """Replay stored output; raw bytes go straight to the given streams."""

        with open_context(_settings(command.target)) as context:
            result = replay_task_logs(context, command.task_id, position=command.position)

        if command.debug:
            return format_debug_lines(result.chunks, result.position)
        write_replay(result.entries, stdout=command.stdout, stderr=command.stderr)
        return []

    def clean(self, command: DeleteTasksCommand) -> list[str]:
        with open_context(_settings(command.target)) as context:
            count = clean_tasks(context, tag=command.tag)
        return [f"Deleted {count} completed tasks"]

    def reset(self, command: DeleteTasksCommand) -> list[str]:
        with open_context(_settings(command.target)) as context:
            count = reset_tasks(context, tag=command.tag)
        return [f"Deleted {count} tasks"]


def _settings(target: StoreTarget) -> Settings:
    return Settings.from_env(db_path=target.db_path, url=target.url)


def _render_task(task: Task, *, status: str) -> list[str]:
    exit_code = f" with exit code {task.exit_code}" if task.exit_code is not None else ""
    header = f"#{task.id} [{task.tag}, {status}{exit_code}]"
    return [
        click.style(header, fg=STATUS_COLORS.get(status, "bright_black")),
        f"> {' '.join(task.command)}",
    ]
