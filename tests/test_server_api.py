from __future__ import annotations

import base64
import io
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import allure
import httpx
import pytest
from fastapi.testclient import TestClient

from remote_tasks.config import RunnerSettings, ServerSettings, Settings, StoreSettings
from remote_tasks.runner import AgentRunner
from remote_tasks.server.app import create_app
from remote_tasks.taskqueue.errors import (
    StoreAuthError,
    StoreUnavailableError,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
)
from remote_tasks.taskqueue.http_store import HttpQueueStore
from remote_tasks.taskqueue.models import LogChunk, LogEntry, LogStream, NewTask, TaskStatus
from remote_tasks.taskqueue.replay import replay_bytes

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("HTTP API"),
]

PASSWORD = "s3cret"
AUTH = ("client", PASSWORD)


@pytest.fixture()
def client(tmp_path: Path) -> Iterator[TestClient]:
    settings = Settings(
        store=StoreSettings(db_path=tmp_path / "server.db"),
        server=ServerSettings(password=PASSWORD),
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture()
def remote_store(client: TestClient) -> HttpQueueStore:
    return HttpQueueStore("http://testserver", password=PASSWORD, client=client)


def test_requests_without_valid_password_are_rejected(client: TestClient) -> None:
    missing = client.get("/tasks")
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"].startswith("Basic")
    assert missing.json()["error"]["code"] == "unauthenticated"

    wrong = client.get("/tasks", auth=("client", "nope"))
    assert wrong.status_code == 401


def test_submit_claim_update_and_logs_round_trip(client: TestClient) -> None:
    created = client.post("/tasks", json={"tag": "t1", "command": ["echo", "hi"]}, auth=AUTH)
    assert created.status_code == 201
    task = created.json()
    assert task["status"] == "pending"

    claimed = client.post("/tasks/claim", params={"tag": "t1"}, auth=AUTH).json()
    assert claimed["id"] == task["id"]
    assert claimed["status"] == "running"
    assert client.post("/tasks/claim", params={"tag": "t1"}, auth=AUTH).json() is None

    appended = client.post(
        f"/tasks/{task['id']}/logs",
        json={
            "timestamp": "2026-10-17T10:00:00+00:00",
            "entries": [{"stream": "stdout", "data": base64.b64encode(b"hi\n").decode()}],
        },
        auth=AUTH,
    )
    assert appended.status_code == 201

    done = client.put(
        f"/tasks/{task['id']}",
        json={"tag": "t1", "status": "done", "command": ["echo", "hi"], "exit_code": 0},
        auth=AUTH,
    )
    assert done.status_code == 200
    assert done.json()["exit_code"] == 0

    logs = client.get(f"/tasks/{task['id']}/logs", auth=AUTH).json()
    assert [entry["data"] for entry in logs[0]["entries"]] == ["aGkK"]
    assert client.get("/tags", auth=AUTH).json() == ["t1"]


def test_malformed_submission_returns_400_with_field_details(client: TestClient) -> None:
    response = client.post("/tasks", json={"tag": "", "command": "echo"}, auth=AUTH)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "invalid_argument"
    assert {item["field"] for item in error["details"]["errors"]} == {"tag", "command"}


def test_done_without_exit_code_is_rejected(client: TestClient) -> None:
    task = client.post("/tasks", json={"tag": "t1", "command": ["true"]}, auth=AUTH).json()

    response = client.put(
        f"/tasks/{task['id']}",
        json={"tag": "t1", "status": "done", "command": ["true"]},
        auth=AUTH,
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["errors"][0]["field"] == "exit_code"


def test_unknown_task_returns_404(client: TestClient) -> None:
    assert client.get("/tasks/404", auth=AUTH).status_code == 404
    assert client.delete("/tasks/404", auth=AUTH).status_code == 404


def test_bulk_delete_filters_by_status(client: TestClient) -> None:
    for _ in range(2):
        client.post("/tasks", json={"tag": "t1", "command": ["true"]}, auth=AUTH)

    deleted = client.delete("/tasks", params={"status": "done"}, auth=AUTH).json()
    assert deleted == {"deleted": 0}
    assert client.delete("/tasks", params={"tag": "t1"}, auth=AUTH).json() == {"deleted": 2}


def test_http_store_maps_errors(remote_store: HttpQueueStore) -> None:
    with pytest.raises(TaskNotFoundError):
        remote_store.get_task(77)
    with pytest.raises(TaskValidationError):
        remote_store.submit(NewTask(tag="t1", command=[]))

    task = remote_store.submit(NewTask(tag="t1", command=["true"]))
    remote_store.claim_next("t1")
    with pytest.raises(TaskConflictError):
        remote_store.update(task, expected_revision=task.revision)


def test_http_store_claims_tags_with_reserved_characters(remote_store: HttpQueueStore) -> None:
    tags = ["gpu/a100", "a b?c&d=e", "100%/#frag"]
    submitted = {tag: remote_store.submit(NewTask(tag=tag, command=["true"])) for tag in tags}

    for tag in tags:
        claimed = remote_store.claim_next(tag)
        assert claimed is not None
        assert claimed.id == submitted[tag].id
        assert claimed.tag == tag
        assert remote_store.claim_next(tag) is None


def test_claim_without_tag_is_rejected(client: TestClient) -> None:
    response = client.post("/tasks/claim", auth=AUTH)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_argument"


def test_http_store_round_trips_binary_logs(remote_store: HttpQueueStore) -> None:
    task = remote_store.submit(NewTask(tag="t1", command=["true"]))
    payload = bytes(range(256))

    remote_store.append_log(
        task.id,
        LogChunk(
            timestamp=datetime(2026, 10, 17, tzinfo=UTC),
            entries=[LogEntry(stream=LogStream.STDOUT, data=payload)],
        ),
    )

    assert replay_bytes(remote_store.fetch_logs(task.id)) == payload
    assert [stored.id for stored in remote_store.list_tasks(status=TaskStatus.PENDING)] == [
        task.id,
    ]


def test_runner_works_against_remote_store(remote_store: HttpQueueStore) -> None:
    task = remote_store.submit(NewTask(tag="t1", command=[sys.executable, "-c", "print('remote')"]))
    runner = AgentRunner(
        store=remote_store,
        tag="t1",
        settings=RunnerSettings(
            heartbeat_interval_seconds=0.05,
            log_flush_interval_seconds=0.05,
            final_write_retry_seconds=0.0,
        ),
        echo_stdout=io.BytesIO(),
        echo_stderr=io.BytesIO(),
    )

    summary = runner.run_once()

    assert summary.succeeded == 1
    stored = remote_store.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.exit_code == 0
    assert replay_bytes(remote_store.fetch_logs(task.id)) == b"remote\n"


def test_http_store_requires_password() -> None:
    with pytest.raises(StoreAuthError):
        HttpQueueStore("http://localhost:8787")


def test_transport_failure_is_reported_as_unavailable() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(base_url="http://queue.invalid", transport=httpx.MockTransport(_refuse))
    store = HttpQueueStore("http://queue.invalid", password=PASSWORD, client=client)

    with pytest.raises(StoreUnavailableError):
        store.claim_next("t1")


def test_server_refuses_to_start_without_password(tmp_path: Path) -> None:
    settings = Settings(store=StoreSettings(db_path=tmp_path / "x.db"))
    with pytest.raises(ValueError, match="REMOTE_TASKS_SERVER_PASSWORD"):
        create_app(settings)
