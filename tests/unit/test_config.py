"""
Unit tests for configuration and connection name resolution.
"""

import threading

import pytest

from ambientdb.core import config
from ambientdb.core.config import (
    Config,
    register_connection_string,
    resolve,
    unregister_connection_string,
)
from ambientdb.core.database import Database
from ambientdb.core.exceptions import ConfigurationError
from ambientdb.core.providers import ProviderFactory, SqliteProvider


@pytest.fixture(autouse=True)
def clean_cache():
    ProviderFactory.clear_cache()
    yield
    ProviderFactory.clear_cache()


class TestResolve:
    def test_registered_name_wins_over_environment(self, monkeypatch):
        monkeypatch.setenv("DB_CONNECTION_LEDGER", "env.db")
        register_connection_string("Ledger", "registered.db", "sqlite3")
        try:
            settings = resolve("Ledger")
        finally:
            unregister_connection_string("Ledger")

        assert settings.connection_string == "registered.db"
        assert settings.provider_name == "sqlite3"

    def test_environment_lookup(self, monkeypatch):
        monkeypatch.setenv("DB_CONNECTION_SALES_ARCHIVE", "archive.db")
        monkeypatch.setenv("DB_PROVIDER_SALES_ARCHIVE", "sqlite")

        settings = resolve("sales-archive")

        assert settings.name == "sales-archive"
        assert settings.connection_string == "archive.db"
        assert settings.provider_name == "sqlite"

    def test_provider_defaults_to_config(self, monkeypatch):
        monkeypatch.setenv("DB_CONNECTION_INVENTORY", "inventory.db")
        monkeypatch.delenv("DB_PROVIDER_INVENTORY", raising=False)

        assert resolve("Inventory").provider_name == Config.DEFAULT_PROVIDER

    def test_unknown_name_raises(self, monkeypatch):
        monkeypatch.delenv("DB_CONNECTION_MISSING_STORE", raising=False)

        with pytest.raises(ConfigurationError, match="DB_CONNECTION_MISSING_STORE"):
            resolve("missing_store")

    def test_empty_name_cannot_be_registered(self):
        with pytest.raises(ConfigurationError):
            register_connection_string("", "x.db")


class TestConfigValidate:
    def test_negative_timeout_is_rejected(self, monkeypatch):
        monkeypatch.setattr(config.Config, "COMMAND_TIMEOUT", -1)

        with pytest.raises(ConfigurationError):
            Config.validate()

    def test_defaults_are_valid(self):
        Config.validate()
        assert Config.COMMAND_TIMEOUT >= 0


class TestDatabaseNameResolution:
    def test_subclass_name_is_the_connection_name(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DB_CONNECTION_REPORTINGSTORE", str(tmp_path / "reporting.db"))

        class ReportingStore(Database):
            pass

        store = ReportingStore()

        assert store.provider_factory.connection_string == str(tmp_path / "reporting.db")
        assert isinstance(store.provider_factory.provider, SqliteProvider)
        assert store.command_timeout == Config.COMMAND_TIMEOUT

    def test_unresolved_name_raises_configuration_error(self, monkeypatch):
        monkeypatch.delenv("DB_CONNECTION_NOWHERE", raising=False)

        with pytest.raises(ConfigurationError):
            Database("Nowhere")


class TestProviderFactoryCache:
    def test_same_name_returns_same_factory(self, tmp_path):
        register_connection_string("CacheProbe", str(tmp_path / "probe.db"))
        try:
            first = ProviderFactory.get_provider("CacheProbe")
            second = ProviderFactory.get_provider("CacheProbe")
        finally:
            unregister_connection_string("CacheProbe")

        assert first is second

    def test_concurrent_lookups_create_one_factory(self, tmp_path):
        register_connection_string("ConcurrentProbe", str(tmp_path / "concurrent.db"))
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def _lookup():
            barrier.wait()
            factory = ProviderFactory.get_provider("ConcurrentProbe")
            with lock:
                results.append(factory)

        threads = [threading.Thread(target=_lookup) for _ in range(8)]
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)
        finally:
            unregister_connection_string("ConcurrentProbe")

        assert len(results) == 8
        assert all(factory is results[0] for factory in results)

    def test_explicit_connection_string_is_keyed_with_provider(self, tmp_path):
        path = str(tmp_path / "explicit.db")

        first = ProviderFactory.for_connection_string(path, "sqlite3")
        second = ProviderFactory.for_connection_string(path, "sqlite3")
        other = ProviderFactory.for_connection_string(path, "sqlite")

        assert first is second
        assert other is not first

    def test_empty_connection_string_is_rejected(self):
        with pytest.raises(ConfigurationError):
            ProviderFactory.for_connection_string("", "sqlite3")
