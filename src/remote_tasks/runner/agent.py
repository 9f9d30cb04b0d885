"""Queue runner that claims tasks and executes their commands locally."""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import BinaryIO

from remote_tasks.config import RunnerSettings
from remote_tasks.runner.buffer import LogFlusher, OutputBuffer
from remote_tasks.runner.process import (
    CapturedProcess,
    run_preparation_command,
    spawn_failure_exit_code,
)
from remote_tasks.storage.common import utc_now
from remote_tasks.taskqueue.errors import StoreError, StoreUnavailableError
from remote_tasks.taskqueue.models import LogStream, Task, TaskStatus
from remote_tasks.taskqueue.store import QueueStore

logger = logging.getLogger(__name__)


class RunnerState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    RUNNING = "running"
    FINALIZING = "finalizing"


@dataclass(slots=True)
class RunnerSummary:
    """Aggregate runner counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0
    preparation_failures: int = 0
    finalize_failures: int = 0

    def add(self, other: RunnerSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.idle_polls += other.idle_polls
        self.preparation_failures += other.preparation_failures
        self.finalize_failures += other.finalize_failures


class Heartbeat:
    """Stamps and pushes ``last_heartbeat`` for the running task."""

    def __init__(
        self,
        *,
        store: QueueStore,
        task: Task,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._task = task.copy()
        self._clock = clock
        self.last_beat: datetime | None = task.last_heartbeat

    def beat(self) -> None:
        now = self._clock()
        # Successive values for one run never go backwards, even if the wall clock does.
        if self.last_beat is not None and now < self.last_beat:
            now = self.last_beat
        self.last_beat = now
        self._task.last_heartbeat = now
        try:
            self._store.update(self._task)
        except StoreError as error:
            logger.warning("Heartbeat for task %s failed: %s", self._task.id, error)


class AgentRunner:
    """Claims one task at a time from ``tag`` and runs it to completion."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: QueueStore,
        tag: str,
        settings: RunnerSettings | None = None,
        echo_stdout: BinaryIO | None = None,
        echo_stderr: BinaryIO | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.tag = tag
        self.settings = settings or RunnerSettings()
        self.echo_stdout = echo_stdout if echo_stdout is not None else sys.stdout.buffer
        self.echo_stderr = echo_stderr if echo_stderr is not None else sys.stderr.buffer
        self.clock = clock
        self.state = RunnerState.IDLE
        self._stop_requested = False

    def run_once(self) -> RunnerSummary:
        """Run at most one claim-execute-finalize cycle."""

        summary = RunnerSummary()
        if self._stop_requested:
            return summary

        try:
            if not self._prepare():
                summary.preparation_failures = 1
                return summary

            self.state = RunnerState.CLAIMING
            task = self._claim()
            if task is None:
                summary.idle_polls = 1
                return summary

            summary.processed = 1
            self.state = RunnerState.RUNNING
            logger.info("Task %s claimed: %s", task.id, " ".join(task.command))
            exit_code, flusher, heartbeat = self._execute(task)

            self.state = RunnerState.FINALIZING
            if not self._finalize(task, exit_code=exit_code, flusher=flusher):
                summary.finalize_failures = 1
            if exit_code == 0:
                summary.succeeded = 1
            else:
                summary.failed = 1
            logger.info(
                "Task %s completed with exit code %s, %d log chunks (last heartbeat %s)",
                task.id,
                exit_code,
                flusher.chunks_sent,
                heartbeat.last_beat.isoformat() if heartbeat.last_beat else "none",
            )
            return summary
        finally:
            self.state = RunnerState.IDLE

    def run_loop(self, *, repeat: bool, max_cycles: int | None = None) -> RunnerSummary:
        """Run one cycle, or keep cycling until stopped when ``repeat`` is set.

        An idle poll or a failed preparation sleeps for the poll interval before
        the next attempt; a finished task is followed by an immediate claim.
        """

        aggregate = RunnerSummary()
        cycles = 0
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.run_once()
                aggregate.add(summary)
                cycles += 1
                if not repeat:
                    break
                if max_cycles is not None and cycles >= max_cycles:
                    break
                if summary.processed == 0:
                    self._sleep_with_stop(self.settings.poll_interval_seconds)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _prepare(self) -> bool:
        for argv in self.settings.pre_task_commands:
            exit_code = run_preparation_command(argv)
            if exit_code != 0:
                logger.error(
                    "Preparation command %s exited with %s; skipping claim",
                    list(argv),
                    exit_code,
                )
                return False
        return True

    def _claim(self) -> Task | None:
        try:
            task = self.store.claim_next(self.tag)
        except StoreUnavailableError as error:
            logger.warning("Queue unavailable while claiming tag %s: %s", self.tag, error)
            return None
        if task is None:
            logger.info("No tasks to run for tag %s", self.tag)
        return task

    def _execute(self, task: Task) -> tuple[int, LogFlusher, Heartbeat]:
        buffer = OutputBuffer()
        flusher = LogFlusher(store=self.store, task_id=task.id, buffer=buffer, clock=self.clock)
        heartbeat = Heartbeat(store=self.store, task=task, clock=self.clock)

        def _capture(stream: LogStream, data: bytes) -> None:
            buffer.append(stream, data)
            self._echo(stream, data)

        process = CapturedProcess(task.command, on_output=_capture)
        try:
            process.start()
        except OSError as error:
            message = f"remote-tasks: failed to start {task.command[0]!r}: {error}\n".encode()
            _capture(LogStream.STDERR, message)
            return spawn_failure_exit_code(error), flusher, heartbeat

        stop = threading.Event()
        timers = [
            _start_periodic(
                name=f"heartbeat-{task.id}",
                interval=self.settings.heartbeat_interval_seconds,
                action=heartbeat.beat,
                stop=stop,
            ),
            _start_periodic(
                name=f"log-flush-{task.id}",
                interval=self.settings.log_flush_interval_seconds,
                action=flusher.flush,
                stop=stop,
            ),
        ]
        try:
            exit_code = process.wait()
        finally:
            stop.set()
            for timer in timers:
                timer.join()
        return exit_code, flusher, heartbeat

    def _finalize(self, task: Task, *, exit_code: int, flusher: LogFlusher) -> bool:
        attempts = max(1, self.settings.final_write_attempts)
        flushed = self._retry(flusher.flush, attempts=attempts)
        if not flushed:
            logger.error("Task %s: could not upload remaining output", task.id)

        final = task.copy()
        final.status = TaskStatus.DONE
        final.exit_code = exit_code
        final.last_heartbeat = None

        def _write() -> bool:
            try:
                self.store.update(final)
            except StoreError as error:
                logger.warning("Final status write for task %s failed: %s", task.id, error)
                return False
            return True

        if not self._retry(_write, attempts=attempts):
            logger.error("Task %s left running: final status could not be stored", task.id)
            return False
        return flushed

    def _retry(self, action: Callable[[], bool], *, attempts: int) -> bool:
        for attempt in range(1, attempts + 1):
            if action():
                return True
            if attempt < attempts:
                time.sleep(self.settings.final_write_retry_seconds)
        return False

    def _echo(self, stream: LogStream, data: bytes) -> None:
        target = self.echo_stdout if stream == LogStream.STDOUT else self.echo_stderr
        try:
            target.write(data)
            target.flush()
        except (OSError, ValueError):
            logger.debug("Echo of %s output failed", stream.value, exc_info=True)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping after the current cycle", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _start_periodic(
    *,
    name: str,
    interval: float,
    action: Callable[[], object],
    stop: threading.Event,
) -> threading.Thread:
    def _loop() -> None:
        while not stop.wait(timeout=interval):
            try:
                action()
            except Exception:
                logger.exception("Periodic %s failed", name)

    thread = threading.Thread(target=_loop, daemon=True, name=name)
    thread.start()
    return thread
