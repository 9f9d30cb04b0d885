"""Binary-safe framing of captured output: base64 payloads inside JSON."""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Any

from remote_tasks.storage.common import from_iso, to_utc_aware_datetime
from remote_tasks.taskqueue.models import LogChunk, LogEntry, LogStream, Task, TaskStatus


def entry_to_payload(entry: LogEntry) -> dict[str, str]:
    return {
        "stream": entry.stream.value,
        "data": base64.b64encode(entry.data).decode("ascii"),
    }


def entry_from_payload(payload: dict[str, Any]) -> LogEntry:
    # Older writers used "type" for the stream name.
    stream = payload.get("stream", payload.get("type"))
    try:
        return LogEntry(
            stream=LogStream(stream),
            data=base64.b64decode(payload["data"], validate=True),
        )
    except (KeyError, ValueError, binascii.Error) as error:
        raise ValueError(f"Malformed log entry: {error}") from error


def encode_entries(entries: list[LogEntry]) -> str:
    return json.dumps([entry_to_payload(entry) for entry in entries], separators=(",", ":"))


def decode_entries(raw: str) -> list[LogEntry]:
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        raise ValueError("Log entries must be a JSON list.")
    return [entry_from_payload(item) for item in parsed]


def chunk_to_payload(chunk: LogChunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "task_id": chunk.task_id,
        "timestamp": to_utc_aware_datetime(chunk.timestamp).isoformat(),
        "entries": [entry_to_payload(entry) for entry in chunk.entries],
    }


def chunk_from_payload(payload: dict[str, Any]) -> LogChunk:
    return LogChunk(
        id=payload.get("id"),
        task_id=payload.get("task_id"),
        timestamp=from_iso(str(payload["timestamp"])),
        entries=[entry_from_payload(item) for item in payload.get("entries", [])],
    )


def task_to_payload(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "tag": task.tag,
        "status": task.status.value,
        "command": list(task.command),
        "exit_code": task.exit_code,
        "last_heartbeat": (
            to_utc_aware_datetime(task.last_heartbeat).isoformat()
            if task.last_heartbeat is not None
            else None
        ),
        "revision": task.revision,
        "created_at": _optional_iso(task.created_at),
        "updated_at": _optional_iso(task.updated_at),
    }


def task_from_payload(payload: dict[str, Any]) -> Task:
    return Task(
        id=int(payload["id"]),
        tag=str(payload["tag"]),
        status=TaskStatus(payload["status"]),
        command=[str(part) for part in payload["command"]],
        exit_code=payload.get("exit_code"),
        last_heartbeat=_optional_datetime(payload.get("last_heartbeat")),
        revision=int(payload.get("revision", 1)),
        created_at=_optional_datetime(payload.get("created_at")),
        updated_at=_optional_datetime(payload.get("updated_at")),
    )


def _optional_iso(value: datetime | None) -> str | None:
    return to_utc_aware_datetime(value).isoformat() if value is not None else None


def _optional_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    return from_iso(str(value))
