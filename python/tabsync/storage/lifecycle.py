"""Backend instance reuse across invocations.

Two strategies, chosen by deployment mode:

BackendPool (long-lived process)
    One backend under a lock. Recreated when the config changes, when it has
    been idle longer than max_idle_s (30 min), or when its health check fails.
    cleanup_idle() closes it after cleanup_idle_s (10 min) without use.

KeyedBackendCache (ephemeral compute)
    Backends keyed by a config fingerprint. A stale or unhealthy entry is
    closed and replaced on lookup. A daemon thread sweeps entries idle past
    max_idle_s (10 min, shorter than the pool's) every sweep_interval_s.

Both hold their lock across check-create-store so two threads never build two
backends for the same key. StorageManager is the explicit composition object
the application owns; there is no module-level singleton.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tabsync.config import Settings, get_settings
from tabsync.errors import StorageError
from tabsync.logging import get_logger
from tabsync.storage.base import BackendConfig, StorageBackend
from tabsync.storage.selector import BackendFactory, detect_ephemeral_compute, select_backend

logger = get_logger(__name__)

Clock = Callable[[], float]


def _close_backend(backend: StorageBackend, reason: str) -> None:
    """Close a backend being dropped; a failing close must not block eviction."""
    try:
        backend.close()
    except Exception:
        logger.warning("backend_close_failed", backend=backend.name, reason=reason, exc_info=True)


def _is_healthy(backend: StorageBackend) -> bool:
    try:
        backend.health_check()
    except StorageError as exc:
        logger.warning("backend_unhealthy", backend=backend.name, error=str(exc))
        return False
    return True


# =============================================================================
# Long-lived process
# =============================================================================


class BackendPool:
    """Single reusable backend for a long-lived process."""

    def __init__(
        self,
        factory: BackendFactory,
        *,
        max_idle_s: float = 30 * 60,
        cleanup_idle_s: float = 10 * 60,
        clock: Clock = time.monotonic,
    ):
        self._factory = factory
        self._max_idle_s = max_idle_s
        self._cleanup_idle_s = cleanup_idle_s
        self._clock = clock
        self._lock = threading.Lock()
        self._backend: StorageBackend | None = None
        self._config: BackendConfig | None = None
        self._last_used: float = 0.0

    def _recreate_reason(self, config: BackendConfig, now: float) -> str | None:
        if self._backend is None:
            return "empty"
        if self._backend.is_closed:
            return "closed"
        if self._config != config:
            return "config_changed"
        if now - self._last_used > self._max_idle_s:
            return "idle_expired"
        if not _is_healthy(self._backend):
            return "unhealthy"
        return None

    def get(self, config: BackendConfig) -> StorageBackend:
        """Return the pooled backend, rebuilding it when stale.

        Raises:
            ConfigurationError: If a new backend cannot be constructed.
        """
        with self._lock:
            now = self._clock()
            reason = self._recreate_reason(config, now)
            if reason is not None:
                if self._backend is not None:
                    _close_backend(self._backend, reason)
                    self._backend = None
                self._backend = self._factory(config)
                self._config = config
                logger.info("pool_backend_created", backend=self._backend.name, reason=reason)
            self._last_used = now
            return self._backend

    def cleanup_idle(self) -> bool:
        """Close and drop the backend if unused for cleanup_idle_s. Returns True if dropped."""
        with self._lock:
            if self._backend is None:
                return False
            if self._clock() - self._last_used <= self._cleanup_idle_s:
                return False
            _close_backend(self._backend, "idle_cleanup")
            logger.info("pool_backend_dropped", backend=self._backend.name, reason="idle_cleanup")
            self._backend = None
            self._config = None
            return True

    def force_cleanup(self) -> None:
        """Unconditionally close and drop the backend."""
        with self._lock:
            if self._backend is not None:
                _close_backend(self._backend, "force_cleanup")
                logger.info("pool_backend_dropped", backend=self._backend.name, reason="force_cleanup")
            self._backend = None
            self._config = None

    def stats(self) -> dict[str, Any]:
        with self._lock:
            if self._backend is None or self._config is None:
                return {"status": "no_connection", "idle_s": None}
            return {
                "status": "connected",
                "backend": self._backend.name,
                "idle_s": round(self._clock() - self._last_used, 3),
                "config": {
                    "fingerprint": self._config.fingerprint()[:12],
                    "has_database": self._config.has_database,
                    "has_rest": self._config.has_rest,
                },
            }


# =============================================================================
# Ephemeral compute
# =============================================================================


@dataclass
class _CacheEntry:
    backend: StorageBackend
    last_used: float


class KeyedBackendCache:
    """Fingerprint-keyed backends with idle sweeping, for serverless runtimes."""

    def __init__(
        self,
        factory: BackendFactory,
        *,
        max_idle_s: float = 10 * 60,
        sweep_interval_s: float = 5 * 60,
        clock: Clock = time.monotonic,
    ):
        self._factory = factory
        self._max_idle_s = max_idle_s
        self._sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @staticmethod
    def key_for(config: BackendConfig) -> str:
        return config.fingerprint()

    def get(self, config: BackendConfig) -> StorageBackend:
        """Return the cached backend for ``config``, replacing stale or unhealthy entries."""
        key = self.key_for(config)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None:
                reason = None
                if entry.backend.is_closed:
                    reason = "closed"
                elif now - entry.last_used > self._max_idle_s:
                    reason = "idle_expired"
                elif not _is_healthy(entry.backend):
                    reason = "unhealthy"

                if reason is None:
                    entry.last_used = now
                    return entry.backend

                _close_backend(entry.backend, reason)
                del self._entries[key]
                logger.info("cache_entry_evicted", key=key[:8], reason=reason)

            backend = self._factory(config)
            self._entries[key] = _CacheEntry(backend=backend, last_used=now)
            logger.info("cache_backend_created", backend=backend.name, key=key[:8])
            return backend

    def sweep(self) -> int:
        """Close entries idle longer than max_idle_s. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_used > self._max_idle_s
            ]
            for key in expired:
                _close_backend(self._entries.pop(key).backend, "idle_sweep")
        if expired:
            logger.info("cache_swept", dropped=len(expired))
        return len(expired)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval_s):
            self.sweep()

    def start_sweeper(self) -> None:
        """Start the background sweep thread (idempotent)."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="tabsync-cache-sweeper", daemon=True
            )
            self._sweeper.start()

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def stop_sweeper(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout)
        self._sweeper = None

    def force_cleanup(self) -> None:
        """Stop the sweeper, then close and drop every cached backend."""
        self.stop_sweeper()
        with self._lock:
            for entry in self._entries.values():
                _close_backend(entry.backend, "force_cleanup")
            count = len(self._entries)
            self._entries.clear()
        logger.info("cache_force_cleanup", dropped=count)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                "total_connections": len(self._entries),
                "sweeper_running": self.sweeper_running,
                "connections": [
                    {
                        "key": f"{key[:8]}...",
                        "backend": entry.backend.name,
                        "idle_s": round(now - entry.last_used, 3),
                    }
                    for key, entry in self._entries.items()
                ],
            }


# =============================================================================
# Composition
# =============================================================================


class StorageManager:
    """Owns the backend lifecycle for one process.

    Args:
        settings: Application settings (defaults to get_settings()).
        ephemeral: Override ephemeral-compute detection.
        factory: Backend constructor; defaults to select_backend with this
            manager's ephemeral flag.
        clock: Monotonic clock, injectable for tests.
        start_sweeper: Start the cache sweeper thread in ephemeral mode.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        ephemeral: bool | None = None,
        factory: BackendFactory | None = None,
        clock: Clock = time.monotonic,
        start_sweeper: bool = True,
    ):
        settings = settings or get_settings()
        self._config = settings.backend_config()
        self.ephemeral = detect_ephemeral_compute() if ephemeral is None else ephemeral
        factory = factory or (lambda config: select_backend(config, self.ephemeral))

        self._pool: BackendPool | None = None
        self._cache: KeyedBackendCache | None = None
        if self.ephemeral:
            self._cache = KeyedBackendCache(
                factory,
                max_idle_s=settings.cache_max_idle_s,
                sweep_interval_s=settings.cache_sweep_interval_s,
                clock=clock,
            )
            if start_sweeper:
                self._cache.start_sweeper()
        else:
            self._pool = BackendPool(
                factory,
                max_idle_s=settings.pool_max_idle_s,
                cleanup_idle_s=settings.pool_cleanup_idle_s,
                clock=clock,
            )

    @property
    def config(self) -> BackendConfig:
        return self._config

    def acquire(self, config: BackendConfig | None = None) -> StorageBackend:
        """Return a ready backend for ``config`` (default: the settings' config)."""
        config = config or self._config
        if self._cache is not None:
            return self._cache.get(config)
        return self._pool.get(config)

    def cleanup_idle(self) -> int:
        """Drop idle backends now. Returns how many were closed."""
        if self._cache is not None:
            return self._cache.sweep()
        return int(self._pool.cleanup_idle())

    def shutdown(self) -> None:
        """Close everything. Safe to call more than once."""
        if self._cache is not None:
            self._cache.force_cleanup()
        else:
            self._pool.force_cleanup()

    def stats(self) -> dict[str, Any]:
        if self._cache is not None:
            return {"mode": "ephemeral", **self._cache.stats()}
        return {"mode": "pool", **self._pool.stats()}
