"""
Driver providers and the provider factory cache.

A provider adapts one DB-API 2.0 module to the operations ambientdb needs:
connecting, beginning and resolving transactions, binding parameters and
enforcing command timeouts. ``ProviderFactory`` binds a provider to a
connection string and is cached per key so repeated ``Database``
construction is cheap.
"""

from __future__ import annotations

import importlib
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from types import ModuleType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, Union

from ambientdb.core.command import Parameter
from ambientdb.core.config import ConnectionStringSettings, resolve
from ambientdb.core.driver import DataAdapter, DbCommand, DbConnection, IsolationLevel
from ambientdb.core.exceptions import ConfigurationError
from ambientdb.utils.logging_config import get_logger


logger = get_logger(__name__)

BoundParameters = Union[Sequence[Any], Mapping[str, Any]]


class DriverProvider(ABC):
    """Capability interface implemented once per database backend."""

    def __init__(self, name: str) -> None:
        self.name = name

    # ------------------------------------------------------------------ #
    # Object factories
    # ------------------------------------------------------------------ #

    def create_connection(self, connection_string: str = "") -> DbConnection:
        return DbConnection(self, connection_string)

    def create_command(self) -> DbCommand:
        return DbCommand(self)

    def create_parameter(self) -> Parameter:
        return Parameter(name="")

    def create_data_adapter(self) -> DataAdapter:
        return DataAdapter()

    # ------------------------------------------------------------------ #
    # Backend hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def connect(self, connection_string: str) -> Any:
        """Open and return a raw DB-API connection."""

    def enable_autocommit(self, raw: Any) -> bool:
        """Put the raw connection in autocommit mode; return False if unsupported."""
        return False

    @abstractmethod
    def begin(self, raw: Any, isolation_level: IsolationLevel) -> None:
        """Begin a transaction on the raw connection."""

    def commit(self, raw: Any) -> None:
        raw.commit()

    def rollback(self, raw: Any) -> None:
        raw.rollback()

    @contextmanager
    def command_deadline(self, raw: Any, seconds: float) -> Iterator[None]:
        """Enforce a per-command timeout around execution where the driver allows it."""
        yield

    def bind_parameters(self, command_text: str, parameters: Sequence[Parameter]) -> BoundParameters:
        return [param.value for param in parameters]


_SQLITE_BEGIN: Dict[IsolationLevel, str] = {
    IsolationLevel.UNSPECIFIED: "BEGIN",
    IsolationLevel.READ_UNCOMMITTED: "BEGIN DEFERRED",
    IsolationLevel.READ_COMMITTED: "BEGIN DEFERRED",
    IsolationLevel.REPEATABLE_READ: "BEGIN IMMEDIATE",
    IsolationLevel.SERIALIZABLE: "BEGIN IMMEDIATE",
}


class SqliteProvider(DriverProvider):
    """Provider for the standard library ``sqlite3`` driver."""

    # Progress handler granularity in SQLite VM instructions
    PROGRESS_STEPS = 1000

    def __init__(self, name: str = "sqlite3") -> None:
        super().__init__(name)

    def connect(self, connection_string: str) -> sqlite3.Connection:
        if not connection_string:
            raise sqlite3.OperationalError("sqlite connection string must name a database")
        conn = sqlite3.connect(
            connection_string,
            check_same_thread=False,
            uri=connection_string.startswith("file:"),
        )
        conn.execute("PRAGMA foreign_keys = ON")  # Enforce referential integrity
        return conn

    def enable_autocommit(self, raw: sqlite3.Connection) -> bool:
        # Explicit BEGIN/COMMIT only; statements outside a transaction commit immediately
        if raw.isolation_level is not None:
            raw.isolation_level = None
        return True

    def begin(self, raw: sqlite3.Connection, isolation_level: IsolationLevel) -> None:
        statement = _SQLITE_BEGIN.get(isolation_level)
        if statement is None:
            raise sqlite3.NotSupportedError(
                f"isolation level {isolation_level.value} is not supported by sqlite"
            )
        raw.execute(statement)

    @contextmanager
    def command_deadline(self, raw: sqlite3.Connection, seconds: float) -> Iterator[None]:
        if not seconds or seconds <= 0:
            yield
            return

        deadline = time.monotonic() + seconds

        def _expired() -> int:
            return 1 if time.monotonic() > deadline else 0

        raw.set_progress_handler(_expired, self.PROGRESS_STEPS)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)

    def bind_parameters(self, command_text: str, parameters: Sequence[Parameter]) -> BoundParameters:
        if all(_names_placeholder(command_text, param.bind_name) for param in parameters):
            return {param.bind_name: param.value for param in parameters}
        return [param.value for param in parameters]


def _names_placeholder(command_text: str, name: str) -> bool:
    if not name:
        return False
    return re.search(rf"[:@$]{re.escape(name)}\b", command_text) is not None


_ISOLATION_SQL: Dict[IsolationLevel, str] = {
    IsolationLevel.READ_UNCOMMITTED: "READ UNCOMMITTED",
    IsolationLevel.READ_COMMITTED: "READ COMMITTED",
    IsolationLevel.REPEATABLE_READ: "REPEATABLE READ",
    IsolationLevel.SERIALIZABLE: "SERIALIZABLE",
    IsolationLevel.SNAPSHOT: "SNAPSHOT",
}


def _set_autocommit(raw: Any, enabled: bool) -> bool:
    current = getattr(raw, "autocommit", None)
    if callable(current):
        current(enabled)
        return True
    if current is None:
        return False
    try:
        raw.autocommit = enabled
    except (AttributeError, TypeError):
        return False
    return True


class DbApiProvider(DriverProvider):
    """
    Generic provider for any PEP 249 module.

    The provider name is the importable module name (``psycopg2``,
    ``pymysql``...). The connection string is passed to ``module.connect``
    as its single positional argument.
    """

    def __init__(self, name: str, module: Optional[ModuleType] = None) -> None:
        super().__init__(name)
        if module is None:
            try:
                module = importlib.import_module(name)
            except ImportError as exc:
                raise ConfigurationError(f"Database provider '{name}' is not installed") from exc
        if not callable(getattr(module, "connect", None)):
            raise ConfigurationError(f"Database provider '{name}' is not a DB-API module")
        self.module = module
        self.paramstyle: str = getattr(module, "paramstyle", "qmark")

    def connect(self, connection_string: str) -> Any:
        return self.module.connect(connection_string)

    def enable_autocommit(self, raw: Any) -> bool:
        return _set_autocommit(raw, True)

    def begin(self, raw: Any, isolation_level: IsolationLevel) -> None:
        level = _ISOLATION_SQL.get(isolation_level)
        if level is None and isolation_level is not IsolationLevel.UNSPECIFIED:
            not_supported = getattr(self.module, "NotSupportedError", NotImplementedError)
            raise not_supported(
                f"isolation level {isolation_level.value} is not supported"
            )
        _set_autocommit(raw, False)
        if level is None:
            return
        cursor = raw.cursor()
        try:
            cursor.execute(f"SET TRANSACTION ISOLATION LEVEL {level}")
        finally:
            cursor.close()

    def bind_parameters(self, command_text: str, parameters: Sequence[Parameter]) -> BoundParameters:
        if self.paramstyle in ("named", "pyformat"):
            return {param.bind_name: param.value for param in parameters}
        return [param.value for param in parameters]


ProviderLoader = Callable[[str], DriverProvider]

_PROVIDER_LOCK = threading.Lock()
_PROVIDERS: Dict[str, ProviderLoader] = {
    "sqlite3": SqliteProvider,
    "sqlite": SqliteProvider,
}


def register_provider(name: str, loader: ProviderLoader) -> None:
    """Register a provider loader under a provider name."""
    with _PROVIDER_LOCK:
        _PROVIDERS[name] = loader


def load_provider(name: str) -> DriverProvider:
    """
    Build the provider registered under ``name``.

    Unregistered names are imported as DB-API modules.

    Raises:
        ConfigurationError: If the provider cannot be loaded.
    """
    if not name:
        raise ConfigurationError("provider name must not be empty")
    with _PROVIDER_LOCK:
        loader = _PROVIDERS.get(name)
    if loader is None:
        return DbApiProvider(name)
    return loader(name)


CacheKey = Tuple[str, ...]


class ProviderFactory:
    """A provider bound to a connection string, cached per lookup key."""

    _cache: Dict[CacheKey, "ProviderFactory"] = {}
    _cache_lock = threading.Lock()

    def __init__(self, connection_string: str, provider_name: str) -> None:
        if not connection_string:
            raise ConfigurationError("connection_string must not be empty")
        if not provider_name:
            raise ConfigurationError("provider_name must not be empty")

        self.connection_string = connection_string
        self.provider_name = provider_name
        self.provider = load_provider(provider_name)

    @classmethod
    def get_provider(cls, connection_string_name: str) -> "ProviderFactory":
        """Return the cached factory for a configured connection name."""
        key = ("name", connection_string_name)
        with cls._cache_lock:
            entry = cls._cache.get(key)
            if entry is None:
                settings: ConnectionStringSettings = resolve(connection_string_name)
                entry = cls(settings.connection_string, settings.provider_name)
                cls._cache[key] = entry
                logger.info(
                    "provider_created",
                    connection_name=connection_string_name,
                    provider=settings.provider_name,
                )
            return entry

    @classmethod
    def for_connection_string(cls, connection_string: str, provider_name: str) -> "ProviderFactory":
        """Return the cached factory for an explicit connection string and provider."""
        key = ("connection_string", connection_string, provider_name)
        with cls._cache_lock:
            entry = cls._cache.get(key)
            if entry is None:
                entry = cls(connection_string, provider_name)
                cls._cache[key] = entry
                logger.info("provider_created", provider=provider_name)
            return entry

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cache.clear()

    def create_connection(self) -> DbConnection:
        return self.provider.create_connection(self.connection_string)

    def create_command(self) -> DbCommand:
        return self.provider.create_command()

    def create_parameter(self) -> Parameter:
        return self.provider.create_parameter()

    def create_data_adapter(self) -> DataAdapter:
        return self.provider.create_data_adapter()
