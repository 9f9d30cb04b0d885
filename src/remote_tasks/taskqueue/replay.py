"""Deterministic reconstruction of task output from stored log chunks.

Replay is a pure function of the chunk list and a position ``p`` in ``[0, N]``:
the entries of chunks ``[0, p)`` in order, each chunk's entries in recorded
order. Payloads stay opaque bytes so control sequences and non-UTF-8 output
round-trip exactly, and ``replay(chunks, k)`` is always a prefix of
``replay(chunks, k + 1)``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import BinaryIO

from remote_tasks.storage.common import to_utc_aware_datetime
from remote_tasks.taskqueue.models import LogChunk, LogEntry, LogStream


def _check_position(chunks: Sequence[LogChunk], position: int | None) -> int:
    if position is None:
        return len(chunks)
    if position < 0 or position > len(chunks):
        raise ValueError(f"Replay position must be within [0, {len(chunks)}], got {position}.")
    return position


def replay(chunks: Sequence[LogChunk], position: int | None = None) -> list[LogEntry]:
    """Entries of the first ``position`` chunks (all chunks when ``None``)."""

    end = _check_position(chunks, position)
    return [entry for chunk in chunks[:end] for entry in chunk.entries]


def replay_bytes(
    chunks: Sequence[LogChunk],
    position: int | None = None,
    *,
    stream: LogStream | None = None,
) -> bytes:
    """Concatenated output bytes, optionally restricted to one stream."""

    return b"".join(
        entry.data
        for entry in replay(chunks, position)
        if stream is None or entry.stream == stream
    )


def write_replay(entries: Sequence[LogEntry], *, stdout: BinaryIO, stderr: BinaryIO) -> None:
    for entry in entries:
        target = stdout if entry.stream == LogStream.STDOUT else stderr
        target.write(entry.data)
    stdout.flush()
    stderr.flush()


def format_debug_lines(chunks: Sequence[LogChunk], position: int | None = None) -> list[str]:
    end = _check_position(chunks, position)
    lines: list[str] = []
    for chunk in chunks[:end]:
        timestamp = to_utc_aware_datetime(chunk.timestamp).isoformat()
        for entry in chunk.entries:
            text = entry.data.decode("utf-8", errors="replace")
            lines.append(f"[{timestamp}] {entry.stream.value}: {text}")
    return lines
