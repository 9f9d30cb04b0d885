"""Queue store error hierarchy."""

from __future__ import annotations

from typing import Any


class StoreError(RuntimeError):
    """Queue store failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class StoreUnavailableError(StoreError):
    """Store could not be reached or failed server-side; safe to retry later."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class StoreAuthError(StoreError):
    pass


class TaskNotFoundError(StoreError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskConflictError(StoreError):
    """Guarded write lost against a concurrent change."""

    def __init__(self, task_id: int, *, expected_revision: int | None = None) -> None:
        super().__init__(
            f"Task state changed concurrently; please retry command (task_id={task_id}).",
        )
        self.task_id = task_id
        self.expected_revision = expected_revision


class TaskValidationError(StoreError):
    """Rejected input, with one entry per offending field."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        details = "; ".join(
            f"{error.get('field', '?')}: {error.get('message', '')}" for error in self.errors
        )
        base = super().__str__()
        return f"{base} {details}" if details else base
