from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError

from remote_tasks import __version__
from remote_tasks.config import Settings
from remote_tasks.server.auth import require_basic_auth
from remote_tasks.server.errors import (
    APIError,
    api_error_handler,
    store_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from remote_tasks.server.routes import router
from remote_tasks.taskqueue.errors import StoreError
from remote_tasks.taskqueue.repository import SqlQueueStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    password = settings.server.password
    if not password:
        raise ValueError("REMOTE_TASKS_SERVER_PASSWORD must be set to serve the queue.")

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        store = SqlQueueStore(
            settings.store.db_path,
            sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
        store.init_schema()
        app.state.store = store
        logger.info("Serving task queue from %s", settings.store.db_path)
        try:
            yield
        finally:
            store.close()

    app = FastAPI(title="remote-tasks queue", version=__version__, lifespan=lifespan)
    app.state.password = password

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router, dependencies=[Depends(require_basic_auth)])
    return app
