"""Shared output buffer and the flusher that drains it into log chunks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from remote_tasks.taskqueue.errors import StoreError
from remote_tasks.taskqueue.models import LogChunk, LogEntry, LogStream
from remote_tasks.taskqueue.store import QueueStore

logger = logging.getLogger(__name__)


class OutputBuffer:
    """Captured entries awaiting upload; every access holds one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []

    def append(self, stream: LogStream, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            self._entries.append(LogEntry(stream=stream, data=bytes(data)))

    def snapshot(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def discard(self, count: int) -> None:
        """Drop the oldest ``count`` entries once they are safely persisted."""

        with self._lock:
            del self._entries[:count]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LogFlusher:
    """Uploads buffered output as one chunk per flush, at least once."""

    def __init__(
        self,
        *,
        store: QueueStore,
        task_id: int,
        buffer: OutputBuffer,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._task_id = task_id
        self._buffer = buffer
        self._clock = clock
        self._flush_lock = threading.Lock()
        self.chunks_sent = 0

    def flush(self) -> bool:
        """Send everything buffered so far; ``False`` leaves it buffered for the next try.

        Entries captured while the append is in flight stay behind the sent
        prefix and go out with the next chunk. If the store persisted a chunk but
        the acknowledgement was lost, the retry duplicates it.
        """

        with self._flush_lock:
            pending = self._buffer.snapshot()
            if not pending:
                return True
            chunk = LogChunk(timestamp=self._clock(), entries=pending)
            try:
                self._store.append_log(self._task_id, chunk)
            except StoreError as error:
                logger.warning(
                    "Log flush for task %s failed, keeping %d entries: %s",
                    self._task_id,
                    len(pending),
                    error,
                )
                return False
            self._buffer.discard(len(pending))
            self.chunks_sent += 1
            return True
