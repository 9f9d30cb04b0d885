"""Request models for the queue HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from remote_tasks.taskqueue.models import LogStream, TaskStatus


class CreateTaskRequest(BaseModel):
    tag: str = Field(min_length=1)
    command: list[str] = Field(min_length=1)
    status: Literal["pending"] = "pending"


class UpdateTaskRequest(BaseModel):
    tag: str = Field(min_length=1)
    status: TaskStatus
    command: list[str] = Field(min_length=1)
    exit_code: int | None = None
    last_heartbeat: datetime | None = None
    expected_revision: int | None = Field(
        default=None,
        description="Reject the write with 409 unless the stored revision matches.",
    )


class LogEntryPayload(BaseModel):
    stream: LogStream
    data: str = Field(description="Base64-encoded output bytes.")


class AppendLogRequest(BaseModel):
    timestamp: datetime
    entries: list[LogEntryPayload] = Field(default_factory=list)
