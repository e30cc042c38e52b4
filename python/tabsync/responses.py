"""Response envelope helpers and exception handlers for the HTTP edge.

Bodies are either {"data": ...} or
{"error": {"code": "E_...", "message": "...", "request_id": "..."}}.

StorageError kinds map to statuses through tabsync.errors.ERROR_CODE_TO_STATUS
(not-found 404, conflict 409, unsupported 501, unavailable/configuration 500).
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from tabsync.errors import StorageError, StorageErrorCode
from tabsync.logging import get_logger, get_request_id

logger = get_logger(__name__)


def success_response(data: Any) -> dict[str, Any]:
    """Wrap ``data`` in the success envelope."""
    return {"data": data}


def error_response(
    code: StorageErrorCode, message: str, request_id: str | None = None
) -> dict[str, Any]:
    """Build the error envelope; request_id defaults to the one bound in context."""
    error: dict[str, Any] = {"code": code.value, "message": message}
    request_id = request_id or get_request_id()
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Render a StorageError with the status derived from its code."""
    if exc.status_code >= 500:
        logger.warning("storage_error", code=exc.code.value, error=str(exc))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log server-side and return a generic 500; details never reach the client."""
    logger.exception("unhandled_exception", error=str(exc))
    return JSONResponse(
        status_code=500,
        content=error_response(StorageErrorCode.E_BACKEND_ERROR, "Internal server error"),
    )
