"""Storage error definitions.

All storage errors are defined here with their corresponding HTTP status codes.
The storage core only makes the distinction available; rendering it is the
HTTP edge's job (see tabsync.app).
"""

from enum import Enum


class StorageErrorCode(str, Enum):
    """Standardized error codes for the storage contract.

    Format: E_CATEGORY_NAME
    """

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"

    # Conflict errors (409)
    E_CONFLICT = "E_CONFLICT"
    E_INSUFFICIENT_CREDITS = "E_INSUFFICIENT_CREDITS"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVITATION_INVALID = "E_INVITATION_INVALID"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"

    # Capability errors (501)
    E_UNSUPPORTED = "E_UNSUPPORTED"

    # Server errors (500)
    E_UNAVAILABLE = "E_UNAVAILABLE"
    E_BACKEND_ERROR = "E_BACKEND_ERROR"
    E_CONFIGURATION = "E_CONFIGURATION"


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[StorageErrorCode, int] = {
    StorageErrorCode.E_NOT_FOUND: 404,
    StorageErrorCode.E_CONFLICT: 409,
    StorageErrorCode.E_INSUFFICIENT_CREDITS: 409,
    StorageErrorCode.E_INVALID_REQUEST: 400,
    StorageErrorCode.E_INVITATION_INVALID: 400,
    StorageErrorCode.E_FORBIDDEN: 403,
    StorageErrorCode.E_UNSUPPORTED: 501,
    StorageErrorCode.E_UNAVAILABLE: 500,
    StorageErrorCode.E_BACKEND_ERROR: 500,
    StorageErrorCode.E_CONFIGURATION: 500,
}


class StorageError(Exception):
    """Base exception for storage errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
        operation: Contract operation that failed, when known
        entity_id: Identifier of the entity involved, when known
    """

    def __init__(
        self,
        code: StorageErrorCode,
        message: str,
        *,
        operation: str | None = None,
        entity_id: str | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        self.operation = operation
        self.entity_id = entity_id
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.entity_id:
            context.append(f"id={self.entity_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class NotFoundError(StorageError):
    """Requested entity or row is absent."""

    def __init__(self, message: str = "Not found", **context):
        super().__init__(StorageErrorCode.E_NOT_FOUND, message, **context)


class ConflictError(StorageError):
    """Uniqueness or constraint violation."""

    def __init__(
        self,
        message: str = "Conflict",
        code: StorageErrorCode = StorageErrorCode.E_CONFLICT,
        **context,
    ):
        super().__init__(code, message, **context)


class InvalidRequestError(StorageError):
    """Caller supplied an invalid value or state transition."""

    def __init__(
        self,
        message: str = "Invalid request",
        code: StorageErrorCode = StorageErrorCode.E_INVALID_REQUEST,
        **context,
    ):
        super().__init__(code, message, **context)


class ForbiddenError(StorageError):
    """Caller is not allowed to perform the operation."""

    def __init__(self, message: str = "Forbidden", **context):
        super().__init__(StorageErrorCode.E_FORBIDDEN, message, **context)


class UnavailableError(StorageError):
    """Backend unreachable, timed out, or failed its health probe."""

    def __init__(self, message: str = "Storage backend unavailable", **context):
        super().__init__(StorageErrorCode.E_UNAVAILABLE, message, **context)


class UnsupportedError(StorageError):
    """Operation not implemented by the selected backend."""

    def __init__(self, message: str = "Operation not supported by this backend", **context):
        super().__init__(StorageErrorCode.E_UNSUPPORTED, message, **context)


class ConfigurationError(StorageError):
    """No backend configured, or every connection strategy failed.

    Raised from backend construction; never returned from a per-call operation.
    """

    def __init__(self, message: str = "Storage backend misconfigured", **context):
        super().__init__(StorageErrorCode.E_CONFIGURATION, message, **context)


class RestApiError(StorageError):
    """Failure-range response from the REST store.

    The raw response body is kept verbatim; it is not assumed to be JSON.
    """

    def __init__(
        self,
        upstream_status: int,
        body: str,
        **context,
    ):
        self.upstream_status = upstream_status
        self.body = body
        code = (
            StorageErrorCode.E_UNAVAILABLE
            if upstream_status >= 500
            else StorageErrorCode.E_BACKEND_ERROR
        )
        super().__init__(
            code,
            f"REST request failed with status {upstream_status}: {body}",
            **context,
        )


class RestConflictError(ConflictError):
    """HTTP 409 from the REST store (unique or foreign-key violation)."""

    def __init__(self, body: str, **context):
        self.upstream_status = 409
        self.body = body
        super().__init__(f"REST request conflicted: {body}", **context)
