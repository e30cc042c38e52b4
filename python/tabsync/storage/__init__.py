"""Storage backends.

Provides:
- StorageBackend contract and BackendConfig descriptor (tabsync.storage.base)
- SqlStorageBackend, the structured store (tabsync.storage.sql_backend)
- RestStorageBackend, the PostgREST store (tabsync.storage.rest_backend)
- select_backend() (tabsync.storage.selector)
- BackendPool / KeyedBackendCache / StorageManager (tabsync.storage.lifecycle)

Only the contract is re-exported here: tabsync.db and tabsync.config import
it, and the concrete backends import them back.
"""

from tabsync.storage.base import BackendConfig, StorageBackend

__all__ = [
    "BackendConfig",
    "StorageBackend",
]
