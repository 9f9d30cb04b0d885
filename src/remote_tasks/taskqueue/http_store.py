"""Queue store client for a remote queue server."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from remote_tasks.storage.common import to_utc_aware_datetime
from remote_tasks.taskqueue.codec import (
    chunk_from_payload,
    entry_to_payload,
    task_from_payload,
)
from remote_tasks.taskqueue.errors import (
    StoreAuthError,
    StoreError,
    StoreUnavailableError,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
)
from remote_tasks.taskqueue.models import LogChunk, NewTask, Task, TaskStatus, validate_new_task

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpQueueStore:
    """httpx-based client speaking the queue server's JSON API."""

    def __init__(
        self,
        base_url: str,
        *,
        username: str = "client",
        password: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        if password is None:
            raise StoreAuthError(
                "Password not found in REMOTE_TASKS_PASSWORD or the .netrc file.",
            )
        self.base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password)
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def claim_next(self, tag: str) -> Task | None:
        payload = self._request("POST", "/tasks/claim", params={"tag": tag})
        return task_from_payload(payload) if payload is not None else None

    def update(self, task: Task, *, expected_revision: int | None = None) -> Task:
        body: dict[str, Any] = {
            "tag": task.tag,
            "status": task.status.value,
            "command": list(task.command),
            "exit_code": task.exit_code,
            "last_heartbeat": (
                to_utc_aware_datetime(task.last_heartbeat).isoformat()
                if task.last_heartbeat is not None
                else None
            ),
            "expected_revision": expected_revision,
        }
        return task_from_payload(
            self._request("PUT", f"/tasks/{task.id}", json=body, task_id=task.id),
        )

    def append_log(self, task_id: int, chunk: LogChunk) -> LogChunk:
        body = {
            "timestamp": to_utc_aware_datetime(chunk.timestamp).isoformat(),
            "entries": [entry_to_payload(entry) for entry in chunk.entries],
        }
        return chunk_from_payload(
            self._request("POST", f"/tasks/{task_id}/logs", json=body, task_id=task_id),
        )

    def fetch_logs(self, task_id: int) -> list[LogChunk]:
        payload = self._request("GET", f"/tasks/{task_id}/logs", task_id=task_id)
        return [chunk_from_payload(item) for item in payload]

    def get_task(self, task_id: int) -> Task:
        return task_from_payload(self._request("GET", f"/tasks/{task_id}", task_id=task_id))

    def list_tasks(
        self,
        *,
        tag: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        params: dict[str, str] = {}
        if tag is not None:
            params["tag"] = tag
        if status is not None:
            params["status"] = status.value
        payload = self._request("GET", "/tasks", params=params)
        return [task_from_payload(item) for item in payload]

    def list_tags(self) -> list[str]:
        return [str(tag) for tag in self._request("GET", "/tags")]

    def submit(self, payload: NewTask) -> Task:
        validate_new_task(payload)
        body = {"tag": payload.tag, "command": list(payload.command), "status": "pending"}
        return task_from_payload(self._request("POST", "/tasks", json=body))

    def delete_task(self, task_id: int) -> None:
        self._request("DELETE", f"/tasks/{task_id}", task_id=task_id)

    def delete_tasks(self, *, tag: str | None = None, status: TaskStatus | None = None) -> int:
        params: dict[str, str] = {}
        if tag is not None:
            params["tag"] = tag
        if status is not None:
            params["status"] = status.value
        payload = self._request("DELETE", "/tasks", params=params)
        return int(payload["deleted"])

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        task_id: int | None = None,
    ) -> Any:
        try:
            response = self._client.request(
                method,
                path,
                json=json,
                params=params,
                auth=self._auth,
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", method, path)
            raise StoreUnavailableError(f"Timeout calling {method} {path}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s %s: %s", method, path, error)
            raise StoreUnavailableError(f"Cannot reach queue server: {error}") from error

        if response.is_success:
            return response.json()
        raise _error_from_response(response, task_id=task_id)


def _error_from_response(response: httpx.Response, *, task_id: int | None) -> StoreError:
    status = response.status_code
    message = f"Request failed with status {status}"
    details: dict[str, Any] = {}
    try:
        envelope = response.json().get("error", {})
    except (ValueError, AttributeError):
        envelope = {}
    if isinstance(envelope, dict):
        message = str(envelope.get("message") or message)
        raw_details = envelope.get("details")
        if isinstance(raw_details, dict):
            details = raw_details

    if status == 401:
        return StoreAuthError("Queue server rejected the credentials.")
    if status == 404 and task_id is not None:
        return TaskNotFoundError(task_id)
    if status == 409 and task_id is not None:
        return TaskConflictError(task_id)
    if status in {400, 422}:
        errors = details.get("errors")
        return TaskValidationError(message, errors=errors if isinstance(errors, list) else [])
    if status >= 500:
        return StoreUnavailableError(message)
    return StoreError(message)
