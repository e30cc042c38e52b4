"""Logging setup for tabsync (structlog on top of stdlib logging).

Every event carries the storage call it belongs to when one is active:
``backend`` ("sql" or "rest"), ``operation`` (the contract method, such as
"save_snapshot") and, behind the HTTP edge, ``request_id``.

    configure_logging(json_format=settings.log_json)
    logger = get_logger(__name__)
    logger.info("snapshot_saved", user_id=user_id, tab_count=5)

Never pass DSN passwords or service keys as fields; log redact_url(dsn) or a
config fingerprint.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from urllib.parse import urlsplit, urlunsplit

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
backend_var: ContextVar[str | None] = ContextVar("backend", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def add_storage_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor: copy the active call context into the event.

    Fields passed explicitly to the log call take precedence over
    backend/operation from context.
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    for key, var in (("backend", backend_var), ("operation", operation_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def _pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_storage_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(json_format: bool = True, level: int = logging.INFO) -> None:
    """Route structlog and stdlib records through a single stdout handler.

    Call once at startup. ``json_format=False`` selects the console renderer
    for local development.
    """
    pre_chain = _pre_chain()
    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def storage_call(backend: str, operation: str) -> Iterator[None]:
    """Bind backend/operation context for the duration of one contract call."""
    backend_token = backend_var.set(backend)
    operation_token = operation_var.set(operation)
    try:
        yield
    finally:
        operation_var.reset(operation_token)
        backend_var.reset(backend_token)


def set_request_id(request_id: str | None) -> None:
    """Set the request correlation ID for the current context."""
    request_id_var.set(request_id)


def get_request_id() -> str | None:
    """Request correlation ID for the current context, if any."""
    return request_id_var.get()


def redact_url(url: str | None) -> str | None:
    """Strip credentials and query string from a connection URL for logging."""
    if not url:
        return url
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    if parts.username:
        host = f"{parts.username}:***@{host}"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))
