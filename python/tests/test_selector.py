"""Tests for backend selection and ephemeral-compute detection."""

import pytest

from tests.factories import FakeBackendFactory
from tabsync.errors import ConfigurationError
from tabsync.storage.base import BackendConfig
from tabsync.storage.selector import backend_order, detect_ephemeral_compute, select_backend
from tabsync.storage.sql_backend import SqlStorageBackend

BOTH = BackendConfig(
    database_url="postgresql://db/tabsync",
    supabase_url="https://project.supabase.co",
    supabase_key="service-role-key",
)
SQL_ONLY = BackendConfig(database_url="postgresql://db/tabsync")
REST_ONLY = BackendConfig(supabase_url="https://project.supabase.co", supabase_key="key")


@pytest.fixture
def factories():
    return {"sql": FakeBackendFactory(), "rest": FakeBackendFactory()}


class TestEphemeralDetection:
    """Tests for serverless environment markers."""

    @pytest.mark.parametrize("marker", ["VERCEL_ENV", "VERCEL_URL", "AWS_LAMBDA_FUNCTION_NAME"])
    def test_marker_detected(self, marker):
        assert detect_ephemeral_compute({marker: "1"}) is True

    def test_empty_marker_ignored(self):
        assert detect_ephemeral_compute({"VERCEL_ENV": ""}) is False

    def test_plain_process(self):
        assert detect_ephemeral_compute({"HOME": "/root"}) is False

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("AWS_LAMBDA_FUNCTION_NAME", "sync")

        assert detect_ephemeral_compute() is True


class TestBackendOrder:
    """Tests for preference order."""

    def test_long_lived_prefers_sql(self):
        assert backend_order(BOTH, ephemeral=False) == ["sql", "rest"]

    def test_ephemeral_prefers_rest(self):
        assert backend_order(BOTH, ephemeral=True) == ["rest", "sql"]

    def test_only_configured_backends(self):
        assert backend_order(SQL_ONLY, ephemeral=True) == ["sql"]
        assert backend_order(REST_ONLY, ephemeral=False) == ["rest"]

    def test_rest_needs_key(self):
        config = BackendConfig(supabase_url="https://project.supabase.co")

        assert backend_order(config, ephemeral=True) == []


class TestSelectBackend:
    """Tests for select_backend."""

    def test_long_lived_builds_sql(self, factories):
        select_backend(BOTH, ephemeral=False, factories=factories)

        assert len(factories["sql"].created) == 1
        assert factories["rest"].created == []

    def test_ephemeral_builds_rest(self, factories):
        select_backend(BOTH, ephemeral=True, factories=factories)

        assert len(factories["rest"].created) == 1
        assert factories["sql"].created == []

    def test_falls_through_to_configured(self, factories):
        select_backend(SQL_ONLY, ephemeral=True, factories=factories)

        assert len(factories["sql"].created) == 1

    def test_environment_decides_when_not_given(self, factories, monkeypatch):
        monkeypatch.setenv("VERCEL_URL", "app.vercel.app")

        select_backend(BOTH, factories=factories)

        assert len(factories["rest"].created) == 1

    def test_nothing_configured(self, factories):
        with pytest.raises(ConfigurationError):
            select_backend(BackendConfig(), ephemeral=False, factories=factories)

    def test_real_sql_backend(self, sqlite_config):
        backend = select_backend(sqlite_config, ephemeral=False)
        try:
            assert isinstance(backend, SqlStorageBackend)
            backend.health_check()
        finally:
            backend.close()

    def test_construction_failure_is_not_masked(self):
        """A configured but unreachable store fails; there is no silent fallback."""
        config = BackendConfig(database_url="sqlite:////nonexistent-dir/tabsync.db")

        with pytest.raises(ConfigurationError):
            select_backend(config, ephemeral=False)
