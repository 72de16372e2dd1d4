"""ambientdb package exports."""

from .core.command import Command, CommandType, DbType, Parameter, ParameterDirection
from .core.config import (
    Config,
    ConnectionStringSettings,
    register_connection_string,
    resolve,
    unregister_connection_string,
)
from .core.database import Database
from .core.driver import (
    ConnectionState,
    DataAdapter,
    DataReader,
    DbCommand,
    DbConnection,
    IsolationLevel,
)
from .core.exceptions import (
    AmbientDbError,
    CommandFailure,
    ConfigurationError,
    DriverError,
    ProgrammingError,
)
from .core.providers import (
    DbApiProvider,
    DriverProvider,
    ProviderFactory,
    SqliteProvider,
    register_provider,
)
from .core.transaction import (
    DependentTransaction,
    RootTransaction,
    Transaction,
    TransactionHandle,
    TransactionScope,
    TransactionState,
    get_current_transaction,
)
from .utils.database_utils import transactional, transactional_method

__all__ = [
    "AmbientDbError",
    "Command",
    "CommandFailure",
    "CommandType",
    "Config",
    "ConfigurationError",
    "ConnectionState",
    "ConnectionStringSettings",
    "DataAdapter",
    "DataReader",
    "Database",
    "DbApiProvider",
    "DbCommand",
    "DbConnection",
    "DbType",
    "DependentTransaction",
    "DriverError",
    "DriverProvider",
    "IsolationLevel",
    "Parameter",
    "ParameterDirection",
    "ProgrammingError",
    "ProviderFactory",
    "RootTransaction",
    "SqliteProvider",
    "Transaction",
    "TransactionHandle",
    "TransactionScope",
    "TransactionState",
    "get_current_transaction",
    "register_connection_string",
    "register_provider",
    "resolve",
    "transactional",
    "transactional_method",
    "unregister_connection_string",
]
