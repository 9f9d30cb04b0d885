from __future__ import annotations

import secrets

from fastapi import Depends, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from remote_tasks.server.errors import APIError

_basic = HTTPBasic(auto_error=False)


def require_basic_auth(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(_basic),
) -> None:
    """Accept any username; the password must match the server password."""

    expected: str = request.app.state.password
    if credentials is None:
        raise APIError(status_code=401, code="unauthenticated", message="Unauthorized.")
    if not secrets.compare_digest(
        credentials.password.encode("utf-8"),
        expected.encode("utf-8"),
    ):
        raise APIError(status_code=401, code="unauthenticated", message="Unauthorized.")
