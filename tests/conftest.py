"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from remote_tasks.config import RunnerSettings
from remote_tasks.logging_setup import remove_console_handler
from remote_tasks.taskqueue.repository import SqlQueueStore

PYTHON = sys.executable


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path):
    """Keep developer REMOTE_TASKS_* variables and ~/.netrc out of every test."""

    for name in (
        "REMOTE_TASKS_DB_PATH",
        "REMOTE_TASKS_URL",
        "REMOTE_TASKS_USERNAME",
        "REMOTE_TASKS_PASSWORD",
        "REMOTE_TASKS_PRE_TASK",
        "REMOTE_TASKS_DEFAULT_TAG",
        "REMOTE_TASKS_SERVER_PASSWORD",
        "REMOTE_TASKS_HEARTBEAT_INTERVAL_SECONDS",
        "REMOTE_TASKS_LOG_FLUSH_INTERVAL_SECONDS",
        "REMOTE_TASKS_POLL_INTERVAL_SECONDS",
        "REMOTE_TASKS_STALE_THRESHOLD_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    yield
    remove_console_handler()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def store(db_path: Path):
    repository = SqlQueueStore(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def fast_runner_settings() -> RunnerSettings:
    return RunnerSettings(
        heartbeat_interval_seconds=0.05,
        log_flush_interval_seconds=0.05,
        poll_interval_seconds=0.05,
        stale_threshold_seconds=1.0,
        final_write_attempts=3,
        final_write_retry_seconds=0.0,
    )
