"""
Configuration management for ambientdb.

This module handles loading environment variables and resolving logical
connection names to a connection string and provider name.
"""

import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import load_dotenv

from ambientdb.core.exceptions import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def _int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Configuration class with environment variables."""

    # Commands
    COMMAND_TIMEOUT: int = _int_env("DB_COMMAND_TIMEOUT", 30)

    # Providers
    DEFAULT_PROVIDER: str = os.getenv("DB_DEFAULT_PROVIDER", "sqlite3")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration is present.

        Raises:
            ConfigurationError: If required configuration is missing.
        """
        if cls.COMMAND_TIMEOUT < 0:
            raise ConfigurationError("DB_COMMAND_TIMEOUT must not be negative")

        if not cls.DEFAULT_PROVIDER:
            raise ConfigurationError("DB_DEFAULT_PROVIDER must be configured")


@dataclass(frozen=True)
class ConnectionStringSettings:
    """A named connection string together with the provider that opens it."""

    name: str
    connection_string: str
    provider_name: str


_REGISTRY_LOCK = threading.Lock()
_REGISTRY: Dict[str, ConnectionStringSettings] = {}


def _env_key(name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in name).upper()


def register_connection_string(
    name: str, connection_string: str, provider_name: Optional[str] = None
) -> ConnectionStringSettings:
    """
    Register a named connection string programmatically.

    Registered entries take precedence over environment variables.

    Args:
        name: Logical connection name used by ``Database(name)``.
        connection_string: Driver specific connection string.
        provider_name: Provider name, defaults to ``Config.DEFAULT_PROVIDER``.

    Returns:
        The stored settings.
    """
    if not name:
        raise ConfigurationError("connection name must not be empty")

    settings = ConnectionStringSettings(
        name=name,
        connection_string=connection_string,
        provider_name=provider_name or Config.DEFAULT_PROVIDER,
    )
    with _REGISTRY_LOCK:
        _REGISTRY[name] = settings
    return settings


def unregister_connection_string(name: str) -> None:
    """Remove a programmatically registered connection string, if present."""
    with _REGISTRY_LOCK:
        _REGISTRY.pop(name, None)


def resolve(name: str) -> ConnectionStringSettings:
    """
    Resolve a logical connection name.

    Looks up the programmatic registry first, then the environment variables
    ``DB_CONNECTION_<NAME>`` and ``DB_PROVIDER_<NAME>``.

    Raises:
        ConfigurationError: If the name does not resolve to a connection string.
    """
    with _REGISTRY_LOCK:
        settings = _REGISTRY.get(name)
    if settings is not None:
        return settings

    key = _env_key(name)
    connection_string = os.getenv(f"DB_CONNECTION_{key}")
    if not connection_string:
        raise ConfigurationError(
            f"Connection string '{name}' is not configured "
            f"(set DB_CONNECTION_{key} or register it)"
        )

    provider_name = os.getenv(f"DB_PROVIDER_{key}") or Config.DEFAULT_PROVIDER
    return ConnectionStringSettings(
        name=name,
        connection_string=connection_string,
        provider_name=provider_name,
    )
