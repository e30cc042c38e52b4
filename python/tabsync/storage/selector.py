"""Backend selection.

Selection order (first match wins):
    1. Ephemeral compute (Vercel, AWS Lambda): REST store, then structured store
    2. Otherwise: structured store, then REST store
    3. Nothing configured: ConfigurationError (no in-process fallback)

Ephemeral compute is detected from process environment markers, not from
settings, so the same configuration behaves correctly on a laptop and in a
serverless function.
"""

import os
from collections.abc import Callable, Mapping

from tabsync.errors import ConfigurationError
from tabsync.logging import get_logger
from tabsync.storage.base import BackendConfig, StorageBackend
from tabsync.storage.rest_backend import RestStorageBackend
from tabsync.storage.sql_backend import SqlStorageBackend

logger = get_logger(__name__)

EPHEMERAL_MARKERS = ("VERCEL_ENV", "VERCEL_URL", "AWS_LAMBDA_FUNCTION_NAME")

BackendFactory = Callable[[BackendConfig], StorageBackend]


def detect_ephemeral_compute(environ: Mapping[str, str] | None = None) -> bool:
    """True when any serverless marker is set to a non-empty value."""
    environ = os.environ if environ is None else environ
    return any(environ.get(marker) for marker in EPHEMERAL_MARKERS)


def backend_order(config: BackendConfig, ephemeral: bool) -> list[str]:
    """Names of the configured backends in preference order."""
    preference = ["rest", "sql"] if ephemeral else ["sql", "rest"]
    configured = {"sql": config.has_database, "rest": config.has_rest}
    return [name for name in preference if configured[name]]


def select_backend(
    config: BackendConfig,
    ephemeral: bool | None = None,
    *,
    factories: Mapping[str, BackendFactory] | None = None,
) -> StorageBackend:
    """Construct the preferred backend for ``config``.

    Args:
        config: Connection descriptor.
        ephemeral: Override for ephemeral-compute detection.
        factories: Constructors keyed by backend name ("sql", "rest"); tests
            inject fakes here.

    Raises:
        ConfigurationError: If no backend is configured, or the chosen
            backend fails to construct.
    """
    if ephemeral is None:
        ephemeral = detect_ephemeral_compute()
    factories = factories or {"sql": SqlStorageBackend, "rest": RestStorageBackend}

    order = backend_order(config, ephemeral)
    if not order:
        raise ConfigurationError(
            "No storage backend configured: set DATABASE_URL or SUPABASE_URL + SUPABASE_SERVICE_KEY"
        )

    chosen = order[0]
    logger.info("backend_selected", backend=chosen, ephemeral=ephemeral, candidates=order)
    return factories[chosen](config)
