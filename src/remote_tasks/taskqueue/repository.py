"""Persistent queue repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from remote_tasks.storage.alembic_runner import upgrade_head
from remote_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from remote_tasks.storage.sqlmodel_models import TaskLogRow, TaskRow
from remote_tasks.taskqueue.codec import decode_entries, encode_entries
from remote_tasks.taskqueue.errors import (
    StoreUnavailableError,
    TaskConflictError,
    TaskNotFoundError,
)
from remote_tasks.taskqueue.models import (
    LogChunk,
    NewTask,
    Task,
    TaskStatus,
    validate_new_task,
    validate_task_state,
)

logger = logging.getLogger(__name__)


class SqlQueueStore:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def submit(self, payload: NewTask) -> Task:
        """Create a pending task."""

        validate_new_task(payload)
        now = utc_now()
        with _translate_db_errors(), Session(self.engine) as session:
            row = TaskRow(
                tag=payload.tag,
                status=TaskStatus.PENDING.value,
                command_json=json.dumps(payload.command, ensure_ascii=False),
                exit_code=None,
                last_heartbeat=None,
                revision=1,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Task %s submitted with tag %s", row.id, row.tag)
            return _to_task(row)

    def claim_next(self, tag: str) -> Task | None:
        """Atomically claim the oldest pending task of ``tag``.

        Losing the conditional update to a concurrent claimer is not an error:
        the loop re-selects and either finds the next pending task or nothing.
        """

        while True:
            now = utc_now()
            with _translate_db_errors(), Session(self.engine) as session:
                candidate = session.exec(
                    select(TaskRow)
                    .where(
                        TaskRow.tag == tag,
                        TaskRow.status == TaskStatus.PENDING.value,
                    )
                    .order_by(col(TaskRow.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                candidate_id = candidate.id

                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.id) == candidate_id,
                        col(TaskRow.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        exit_code=None,
                        last_heartbeat=to_db_datetime(now),
                        revision=col(TaskRow.revision) + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.exec(
                    select(TaskRow).where(TaskRow.id == candidate_id),
                ).one()
                return _to_task(claimed)

    def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
        """Overwrite mutable task fields.

        Without ``expected_revision`` this is a blind overwrite, so it can undo a
        concurrent claim or requeue that landed between the caller's read and
        this write. Pass the revision that was read to turn it into a
        compare-and-swap that raises ``TaskConflictError`` instead.
        """

        validate_task_state(task)
        now = utc_now()
        conditions = [col(TaskRow.id) == task.id]
        if expected_revision is not None:
            conditions.append(col(TaskRow.revision) == expected_revision)

        with _translate_db_errors(), Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(*conditions)
                .values(
                    tag=task.tag,
                    status=task.status.value,
                    command_json=json.dumps(task.command, ensure_ascii=False),
                    exit_code=task.exit_code,
                    last_heartbeat=(
                        to_db_datetime(task.last_heartbeat)
                        if task.last_heartbeat is not None
                        else None
                    ),
                    revision=col(TaskRow.revision) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                exists = session.exec(select(TaskRow.id).where(TaskRow.id == task.id)).first()
                if exists is None:
                    raise TaskNotFoundError(task.id)
                raise TaskConflictError(task.id, expected_revision=expected_revision)
            session.commit()
            row = session.exec(select(TaskRow).where(TaskRow.id == task.id)).one()
            return _to_task(row)

    def append_log(self, task_id: int, chunk: LogChunk) -> LogChunk:
        """Persist one log chunk; concurrent appends never conflict."""

        with _translate_db_errors(), Session(self.engine) as session:
            row = TaskLogRow(
                task_id=task_id,
                timestamp=to_db_datetime(chunk.timestamp),
                entries_json=encode_entries(chunk.entries),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise TaskNotFoundError(task_id) from error
            session.refresh(row)
            return _to_chunk(row)

    def fetch_logs(self, task_id: int) -> list[LogChunk]:
        with _translate_db_errors(), Session(self.engine) as session:
            rows = session.exec(
                select(TaskLogRow)
                .where(TaskLogRow.task_id == task_id)
                .order_by(col(TaskLogRow.id).asc()),
            ).all()
        return [_to_chunk(row) for row in rows]

    def get_task(self, task_id: int) -> Task:
        with _translate_db_errors(), Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return _to_task(row)

    def list_tasks(
        self,
        *,
        tag: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        """List tasks in id order, optionally filtered by tag and status."""

        with _translate_db_errors(), Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.id).asc())
            if tag is not None:
                statement = statement.where(TaskRow.tag == tag)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def list_tags(self) -> list[str]:
        with _translate_db_errors(), Session(self.engine) as session:
            tags = session.exec(select(TaskRow.tag).distinct().order_by(TaskRow.tag)).all()
        return [str(tag) for tag in tags]

    def delete_task(self, task_id: int) -> None:
        with _translate_db_errors(), Session(self.engine) as session:
            result = session.exec(sa_delete(TaskRow).where(col(TaskRow.id) == task_id))
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

    def delete_tasks(self, *, tag: str | None = None, status: TaskStatus | None = None) -> int:
        """Delete matching tasks; their log chunks go with them."""

        with _translate_db_errors(), Session(self.engine) as session:
            statement = sa_delete(TaskRow)
            if tag is not None:
                statement = statement.where(col(TaskRow.tag) == tag)
            if status is not None:
                statement = statement.where(col(TaskRow.status) == status.value)
            result = session.exec(statement)
            session.commit()
            return int(result.rowcount or 0)


@contextmanager
def _translate_db_errors() -> Iterator[None]:
    try:
        yield
    except OperationalError as error:
        raise StoreUnavailableError(f"Queue database unavailable: {error}") from error


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task(row: TaskRow) -> Task:
    if row.id is None:
        raise RuntimeError("Task row has no id after commit.")
    return Task(
        id=row.id,
        tag=row.tag,
        status=TaskStatus(row.status),
        command=list(json.loads(row.command_json)),
        exit_code=row.exit_code,
        last_heartbeat=_optional_aware(row.last_heartbeat),
        revision=row.revision,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_chunk(row: TaskLogRow) -> LogChunk:
    return LogChunk(
        id=row.id,
        task_id=row.task_id,
        timestamp=to_utc_aware_datetime(row.timestamp),
        entries=decode_entries(row.entries_json),
    )
