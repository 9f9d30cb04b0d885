from __future__ import annotations

import io
import logging
import sys
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import allure

from remote_tasks.config import RunnerSettings
from remote_tasks.runner import AgentRunner, RunnerState
from remote_tasks.runner.agent import Heartbeat
from remote_tasks.taskqueue.errors import StoreUnavailableError
from remote_tasks.taskqueue.models import LogChunk, LogStream, NewTask, Task, TaskStatus
from remote_tasks.taskqueue.replay import replay_bytes
from remote_tasks.taskqueue.repository import SqlQueueStore

pytestmark = [
    allure.epic("Agent Runner"),
    allure.feature("Task Execution"),
]

PYTHON = sys.executable


class _DelegatingStore:
    """Wraps a real store so single operations can be made to fail."""

    def __init__(self, inner: SqlQueueStore) -> None:
        self.inner = inner

    def __getattr__(self, name: str):
        return getattr(self.inner, name)


class _UnreachableClaimStore(_DelegatingStore):
    def claim_next(self, tag: str) -> Task | None:
        raise StoreUnavailableError("connection refused")


class _FlakyLogStore(_DelegatingStore):
    def __init__(self, inner: SqlQueueStore, *, failures: int) -> None:
        super().__init__(inner)
        self.failures = failures

    def append_log(self, task_id: int, chunk: LogChunk) -> LogChunk:
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailableError("timeout")
        return self.inner.append_log(task_id, chunk)


class _OutageWhileRunningStore(_DelegatingStore):
    """Fails heartbeats and log uploads for the first few calls of each."""

    def __init__(self, inner: SqlQueueStore, *, failures: int) -> None:
        super().__init__(inner)
        self.heartbeat_failures = failures
        self.log_failures = failures
        self.failed_heartbeats = 0
        self.failed_logs = 0

    def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
        if task.status == TaskStatus.RUNNING and self.heartbeat_failures > 0:
            self.heartbeat_failures -= 1
            self.failed_heartbeats += 1
            raise StoreUnavailableError("timeout")
        return self.inner.update(task, expected_revision=expected_revision)

    def append_log(self, task_id: int, chunk: LogChunk) -> LogChunk:
        if self.log_failures > 0:
            self.log_failures -= 1
            self.failed_logs += 1
            raise StoreUnavailableError("timeout")
        return self.inner.append_log(task_id, chunk)


class _FinalWriteFailsStore(_DelegatingStore):
    def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
        if task.status == TaskStatus.DONE:
            raise StoreUnavailableError("timeout")
        return self.inner.update(task, expected_revision=expected_revision)


def _runner(store, settings: RunnerSettings, *, tag: str = "t1") -> tuple[AgentRunner, io.BytesIO]:
    stdout = io.BytesIO()
    runner = AgentRunner(
        store=store,
        tag=tag,
        settings=settings,
        echo_stdout=stdout,
        echo_stderr=io.BytesIO(),
    )
    return runner, stdout


def test_runner_executes_task_and_records_output(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", "print('hi')"]))
    runner, echoed = _runner(store, fast_runner_settings)

    summary = runner.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert runner.state == RunnerState.IDLE
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.exit_code == 0
    assert stored.last_heartbeat is None
    assert replay_bytes(store.fetch_logs(task.id), stream=LogStream.STDOUT) == b"hi\n"
    assert echoed.getvalue() == b"hi\n"


def test_completion_is_logged_with_uploaded_chunk_count(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
    caplog,
) -> None:
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", "print('hi')"]))
    runner, _ = _runner(store, replace(fast_runner_settings, log_flush_interval_seconds=30.0))

    with caplog.at_level(logging.INFO, logger="remote_tasks.runner.agent"):
        runner.run_once()

    assert f"Task {task.id} completed with exit code 0, 1 log chunks" in caplog.text


def test_nonzero_exit_code_is_recorded(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(
        NewTask(
            tag="t1",
            command=[PYTHON, "-c", "import sys; sys.stderr.write('bad\\n'); sys.exit(3)"],
        ),
    )
    runner, _ = _runner(store, fast_runner_settings)

    summary = runner.run_once()

    assert summary.failed == 1
    stored = store.get_task(task.id)
    assert stored.exit_code == 3
    assert replay_bytes(store.fetch_logs(task.id), stream=LogStream.STDERR) == b"bad\n"


def test_slow_output_is_flushed_in_several_chunks(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    script = (
        "import time\n"
        "for index in range(3):\n"
        "    print(index, flush=True)\n"
        "    time.sleep(0.3)\n"
    )
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", script]))
    runner, _ = _runner(store, replace(fast_runner_settings, log_flush_interval_seconds=0.1))

    runner.run_once()

    chunks = store.fetch_logs(task.id)
    assert len(chunks) >= 2
    assert replay_bytes(chunks) == b"0\n1\n2\n"
    timestamps = [chunk.timestamp for chunk in chunks]
    assert timestamps == sorted(timestamps)


def test_heartbeat_is_written_while_the_task_runs(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", "import time; time.sleep(0.4)"]))
    runner, _ = _runner(store, fast_runner_settings)

    runner.run_once()

    # Claim bumps the revision once, the final write once; anything beyond is heartbeats.
    assert store.get_task(task.id).revision > task.revision + 2


def test_heartbeat_never_goes_backwards() -> None:
    updates: list[datetime] = []

    class _Store:
        def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
            updates.append(task.last_heartbeat)
            return task

    later = datetime(2026, 10, 17, 12, 0, 30, tzinfo=UTC)
    times = iter([later, later - timedelta(seconds=5), later + timedelta(seconds=30)])
    heartbeat = Heartbeat(
        store=_Store(),
        task=Task(id=1, tag="t1", status=TaskStatus.RUNNING, command=["true"]),
        clock=lambda: next(times),
    )

    heartbeat.beat()
    heartbeat.beat()
    heartbeat.beat()

    assert updates == [later, later, later + timedelta(seconds=30)]


def test_failed_preparation_command_skips_claim(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=["true"]))
    settings = replace(
        fast_runner_settings,
        pre_task_commands=((PYTHON, "-c", "raise SystemExit(2)"),),
    )
    runner, _ = _runner(store, settings)

    summary = runner.run_once()

    assert summary.preparation_failures == 1
    assert summary.processed == 0
    assert store.get_task(task.id).status == TaskStatus.PENDING


def test_missing_program_is_recorded_as_exit_127(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=["/nonexistent/remote-tasks-missing-binary"]))
    runner, _ = _runner(store, fast_runner_settings)

    summary = runner.run_once()

    assert summary.failed == 1
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.exit_code == 127
    stderr = replay_bytes(store.fetch_logs(task.id), stream=LogStream.STDERR)
    assert b"failed to start" in stderr


def test_signal_death_maps_to_128_plus_signal(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(
        NewTask(
            tag="t1",
            command=[PYTHON, "-c", "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"],
        ),
    )
    runner, _ = _runner(store, fast_runner_settings)

    runner.run_once()

    assert store.get_task(task.id).exit_code == 128 + 15


def test_unreachable_store_at_claim_counts_as_idle(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    store.submit(NewTask(tag="t1", command=["true"]))
    runner, _ = _runner(_UnreachableClaimStore(store), fast_runner_settings)

    summary = runner.run_once()

    assert summary.idle_polls == 1
    assert summary.processed == 0


def test_final_flush_retries_until_logs_are_stored(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", "print('kept')"]))
    settings = replace(fast_runner_settings, log_flush_interval_seconds=30.0)
    runner, _ = _runner(_FlakyLogStore(store, failures=2), settings)

    summary = runner.run_once()

    assert summary.finalize_failures == 0
    assert replay_bytes(store.fetch_logs(task.id)) == b"kept\n"
    assert store.get_task(task.id).status == TaskStatus.DONE


def test_store_outage_while_running_does_not_abort_the_task(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    script = (
        "import time\n"
        "for index in range(5):\n"
        "    print(index, flush=True)\n"
        "    time.sleep(0.1)\n"
    )
    task = store.submit(NewTask(tag="t1", command=[PYTHON, "-c", script]))
    settings = replace(
        fast_runner_settings,
        heartbeat_interval_seconds=0.03,
        log_flush_interval_seconds=0.03,
    )
    flaky = _OutageWhileRunningStore(store, failures=3)
    runner, echoed = _runner(flaky, settings)

    summary = runner.run_once()

    assert flaky.failed_heartbeats == 3
    assert flaky.failed_logs == 3
    assert summary.succeeded == 1
    assert summary.finalize_failures == 0
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.exit_code == 0
    assert replay_bytes(store.fetch_logs(task.id)) == b"0\n1\n2\n3\n4\n"
    assert echoed.getvalue() == b"0\n1\n2\n3\n4\n"


def test_task_stays_running_when_final_write_keeps_failing(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    task = store.submit(NewTask(tag="t1", command=["true"]))
    runner, _ = _runner(_FinalWriteFailsStore(store), fast_runner_settings)

    summary = runner.run_once()

    assert summary.finalize_failures == 1
    assert store.get_task(task.id).status == TaskStatus.RUNNING


def test_repeat_loop_drains_queue_and_stops_at_max_cycles(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    for index in range(2):
        store.submit(NewTask(tag="t1", command=[PYTHON, "-c", f"print({index})"]))
    runner, echoed = _runner(store, fast_runner_settings)

    summary = runner.run_loop(repeat=True, max_cycles=3)

    assert summary.processed == 2
    assert summary.idle_polls == 1
    assert echoed.getvalue() == b"0\n1\n"


def test_single_run_with_empty_queue_is_one_idle_poll(
    store: SqlQueueStore,
    fast_runner_settings: RunnerSettings,
) -> None:
    runner, _ = _runner(store, fast_runner_settings)

    summary = runner.run_loop(repeat=False)

    assert summary.processed == 0
    assert summary.idle_polls == 1
