from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from remote_tasks.taskqueue.errors import (
    StoreError,
    StoreUnavailableError,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload, headers=headers)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    headers = None
    if exc.status_code == 401:
        headers = {"WWW-Authenticate": 'Basic realm="remote-tasks", charset="UTF-8"'}
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Pydantic errors may carry non-JSON context values; keep location and message only.
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": str(error.get("msg", "")),
        }
        for error in exc.errors()
    ]
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": errors},
    )


async def store_error_handler(_req: Request, exc: StoreError) -> JSONResponse:
    if isinstance(exc, TaskValidationError):
        return error_response(
            status_code=400,
            code="invalid_argument",
            message=exc.args[0],
            details={"errors": exc.errors},
        )
    if isinstance(exc, TaskNotFoundError):
        return error_response(status_code=404, code="not_found", message=str(exc))
    if isinstance(exc, TaskConflictError):
        return error_response(status_code=409, code="conflict", message=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return error_response(status_code=503, code="unavailable", message=str(exc))
    return error_response(status_code=500, code="internal", message=str(exc))


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Details stay in the server log.
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
