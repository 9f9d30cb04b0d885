"""CLI entrypoint for remote-tasks."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from remote_tasks import __version__
from remote_tasks.logging_setup import setup_logging
from remote_tasks.taskqueue.controllers import (
    AddTaskCommand,
    DeleteTasksCommand,
    ListTasksCommand,
    RunTasksCommand,
    StoreTarget,
    TailCommand,
    TaskCliController,
    TaskIdsCommand,
)
from remote_tasks.taskqueue.errors import StoreError

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()

TAG_OPTION_HELP = "Task tag. Defaults to REMOTE_TASKS_DEFAULT_TAG."


@click.group()
@click.version_option(version=__version__, prog_name="remote-tasks")
@click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to REMOTE_TASKS_DB_PATH or .remote_tasks.db.",
)
@click.option(
    "--url",
    default=None,
    help="Queue server URL. Overrides REMOTE_TASKS_URL; the local DB is ignored when set.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Diagnostic log level (written to stderr).",
)
@click.pass_context
def remote_tasks(ctx: click.Context, db_path: Path | None, url: str | None, log_level: str) -> None:
    """Pull-based remote task queue."""

    setup_logging(log_level)
    ctx.obj = StoreTarget(db_path=db_path, url=url)


@remote_tasks.command(
    "add",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option("--tag", default=None, help=TAG_OPTION_HELP)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def add(target: StoreTarget, tag: str | None, command: tuple[str, ...]) -> None:
    """Add a command to the queue.

    Everything after the options is the command, e.g.
    `remote-tasks add --tag gpu python train.py --epochs 3`.
    """

    with _cli_errors():
        lines = TASK_CONTROLLER.add(AddTaskCommand(target=target, tag=tag, command=command))
    _emit_lines(lines)


@remote_tasks.command("remove")
@click.argument("task_ids", nargs=-1, required=True, type=int)
@click.pass_obj
def remove(target: StoreTarget, task_ids: tuple[int, ...]) -> None:
    """Remove tasks and their logs."""

    with _cli_errors():
        lines = TASK_CONTROLLER.remove(TaskIdsCommand(target=target, task_ids=task_ids))
    _emit_lines(lines)


@remote_tasks.command("requeue")
@click.argument("task_ids", nargs=-1, required=True, type=int)
@click.pass_obj
def requeue(target: StoreTarget, task_ids: tuple[int, ...]) -> None:
    """Return tasks to pending; their previous logs are kept."""

    with _cli_errors():
        lines = TASK_CONTROLLER.requeue(TaskIdsCommand(target=target, task_ids=task_ids))
    _emit_lines(lines)


@remote_tasks.command("tags")
@click.pass_obj
def tags(target: StoreTarget) -> None:
    """List distinct task tags."""

    with _cli_errors():
        lines = TASK_CONTROLLER.tags(target)
    _emit_lines(lines)


@remote_tasks.command("list")
@click.option("--tag", default=None, help="Optional tag filter.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "done"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.pass_obj
def list_tasks(target: StoreTarget, tag: str | None, status: str | None) -> None:
    """List tasks; running tasks without a recent heartbeat are shown as stale."""

    with _cli_errors():
        lines = TASK_CONTROLLER.list_tasks(
            ListTasksCommand(
                target=target,
                tag=tag,
                status=status.lower() if status else None,
            ),
        )
    _emit_lines(lines)


@remote_tasks.command("run")
@click.option("--tag", default=None, help=TAG_OPTION_HELP)
@click.option(
    "--repeat/--once",
    default=False,
    show_default=True,
    help="Keep claiming tasks until interrupted, polling while the queue is empty.",
)
@click.pass_obj
def run(target: StoreTarget, tag: str | None, repeat: bool) -> None:
    """Claim and run tasks from the queue."""

    with _cli_errors():
        lines = TASK_CONTROLLER.run(
            RunTasksCommand(
                target=target,
                tag=tag,
                repeat=repeat,
                echo_stdout=click.get_binary_stream("stdout"),
                echo_stderr=click.get_binary_stream("stderr"),
            ),
        )
    _emit_lines(lines)


@remote_tasks.command("tail")
@click.argument("task_id", type=int)
@click.option(
    "--position",
    type=click.IntRange(min=0),
    default=None,
    help="Replay only the first N log chunks. Defaults to all of them.",
)
@click.option("--debug", is_flag=True, default=False, help="Show timestamped chunk entries.")
@click.pass_obj
def tail(target: StoreTarget, task_id: int, position: int | None, debug: bool) -> None:
    """Replay the captured output of a task."""

    with _cli_errors():
        lines = TASK_CONTROLLER.tail(
            TailCommand(
                target=target,
                task_id=task_id,
                position=position,
                debug=debug,
                stdout=click.get_binary_stream("stdout"),
                stderr=click.get_binary_stream("stderr"),
            ),
        )
    _emit_lines(lines)


@remote_tasks.command("clean")
@click.option("--tag", default=None, help="Optional tag filter.")
@click.option("--force", is_flag=True, default=False, help="Skip confirmation prompt.")
@click.pass_obj
def clean(target: StoreTarget, tag: str | None, force: bool) -> None:
    """Delete completed tasks."""

    if not force:
        message = (
            f"Delete all completed tasks with tag {tag}?" if tag else "Delete all completed tasks?"
        )
        if not click.confirm(message, default=False):
            return
    with _cli_errors():
        lines = TASK_CONTROLLER.clean(DeleteTasksCommand(target=target, tag=tag))
    _emit_lines(lines)


@remote_tasks.command("reset")
@click.option("--tag", default=None, help="Optional tag filter.")
@click.option("--force", is_flag=True, default=False, help="Skip confirmation prompts.")
@click.pass_obj
def reset(target: StoreTarget, tag: str | None, force: bool) -> None:
    """Delete all tasks in any status, optionally filtered by tag."""

    if not force:
        message = f"Delete all tasks with tag {tag}?" if tag else "Delete all tasks?"
        if not click.confirm(message, default=False):
            return
        if not click.confirm("Are you really sure? This can't be undone!", default=False):
            return
    with _cli_errors():
        lines = TASK_CONTROLLER.reset(DeleteTasksCommand(target=target, tag=tag))
    _emit_lines(lines)


@remote_tasks.command("serve")
@click.option("--host", default=None, help="Bind host. Defaults to REMOTE_TASKS_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
@click.pass_obj
def serve(target: StoreTarget, host: str | None, port: int | None) -> None:
    """Serve the local queue over HTTP for runners on other machines."""

    # Server stack is only imported for this command.
    import uvicorn

    from remote_tasks.config import Settings
    from remote_tasks.server.app import create_app

    settings = Settings.from_env(db_path=target.db_path)
    with _cli_errors():
        app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_config=None,
    )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (StoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    remote_tasks()
