"""FastAPI composition root.

The application owns exactly one StorageManager, created in the lifespan
from settings (or injected by tests) and shut down on exit. Product routes
live outside this package; only health endpoints are served here.

Endpoints:
    GET /health          liveness of the selected storage backend
    GET /health/storage  lifecycle statistics (pool or cache)
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from tabsync.config import get_settings
from tabsync.errors import StorageError
from tabsync.logging import configure_logging, get_logger, set_request_id
from tabsync.responses import (
    storage_error_handler,
    success_response,
    unhandled_exception_handler,
)
from tabsync.storage.lifecycle import StorageManager

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the storage manager at startup; close every backend at shutdown."""
    if app.state.manager is None:
        app.state.manager = StorageManager(get_settings())
    logger.info("storage_manager_ready", ephemeral=app.state.manager.ephemeral)

    yield

    app.state.manager.shutdown()
    logger.info("storage_manager_shutdown")


def create_app(manager: StorageManager | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        manager: Pre-built StorageManager (for testing). Built from settings
            in the lifespan when omitted.
    """
    settings = get_settings()
    configure_logging(json_format=settings.log_json)

    app = FastAPI(
        title="tabsync storage API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.manager = manager

    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            set_request_id(None)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.get("/health")
    def health(request: Request) -> dict:
        backend = request.app.state.manager.acquire()
        backend.health_check()
        return success_response({"status": "ok", "backend": backend.name})

    @app.get("/health/storage")
    def storage_stats(request: Request) -> dict:
        return success_response(request.app.state.manager.stats())

    return app
