"""Pytest configuration and fixtures for tabsync tests.

Test isolation strategy:
- Structured-store tests run against a fresh file-backed SQLite database per
  test (tmp_path), with the schema created by the backend itself
- REST-store tests mock PostgREST with respx; no network is touched
- Settings cache and ephemeral-compute markers are reset around every test
- Tests marked ``postgres`` run the structured store against
  TEST_POSTGRES_URL and are skipped when it is unset
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest

from tabsync.config import clear_settings_cache
from tabsync.storage.base import BackendConfig
from tabsync.storage.rest_backend import RestStorageBackend
from tabsync.storage.selector import EPHEMERAL_MARKERS
from tabsync.storage.sql_backend import SqlStorageBackend

REST_URL = "https://project.supabase.co"
REST_BASE = f"{REST_URL}/rest/v1"
REST_KEY = "service-role-key"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Strip serverless markers and store settings so tests see a clean process."""
    for marker in EPHEMERAL_MARKERS:
        monkeypatch.delenv(marker, raising=False)
    for name in ("DATABASE_URL", "SUPABASE_URL", "SUPABASE_SERVICE_KEY"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'tabsync.db'}"


@pytest.fixture
def sqlite_config(sqlite_url: str) -> BackendConfig:
    return BackendConfig(database_url=sqlite_url)


@pytest.fixture
def sql_backend(sqlite_config: BackendConfig) -> Generator[SqlStorageBackend, None, None]:
    """Structured-store backend over a throwaway SQLite file."""
    backend = SqlStorageBackend(sqlite_config, create_schema=True)
    yield backend
    backend.close()


@pytest.fixture
def pg_backend() -> Generator[SqlStorageBackend, None, None]:
    """Structured-store backend over a real PostgreSQL database (opt-in)."""
    url = os.environ.get("TEST_POSTGRES_URL")
    if not url:
        pytest.skip("TEST_POSTGRES_URL is not set")
    backend = SqlStorageBackend(BackendConfig(database_url=url), create_schema=True)
    yield backend
    backend.close()


@pytest.fixture
def rest_config() -> BackendConfig:
    return BackendConfig(supabase_url=REST_URL, supabase_key=REST_KEY)


@pytest.fixture
def rest_backend(rest_config: BackendConfig) -> Generator[RestStorageBackend, None, None]:
    """REST-store backend; pair with @respx.mock in the test."""
    backend = RestStorageBackend(rest_config)
    yield backend
    backend.close()
