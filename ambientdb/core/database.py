"""
Command execution for ambientdb.

This module handles:
- Binding a ``Database`` to a configured connection name or an explicit
  connection string and provider
- Building driver commands, adapters and parameters
- Running commands on the ambient transaction when one is active, or on a
  private connection that is released on every exit path
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union

import pandas as pd

from ambientdb.core.command import (
    Command,
    CommandType,
    DbType,
    Parameter,
    ParameterDirection,
    infer_db_type,
)
from ambientdb.core.config import Config
from ambientdb.core.driver import (
    DataAdapter,
    DataReader,
    DbCommand,
    DbConnection,
    IsolationLevel,
)
from ambientdb.core.exceptions import CommandFailure, ProgrammingError
from ambientdb.core.providers import ProviderFactory
from ambientdb.core.transaction import Transaction, TransactionScope, get_current_transaction
from ambientdb.utils.logging_config import get_logger


logger = get_logger(__name__)

CommandLike = Union[Command, str]


class Database:
    """
    Entry point for running commands against one configured database.

    ``Database()`` on a subclass resolves the subclass name as the connection
    name, so ``class Orders(Database): pass`` reads ``DB_CONNECTION_ORDERS``.
    """

    def __init__(
        self,
        connection_string_name: Optional[str] = None,
        *,
        provider_factory: Optional[ProviderFactory] = None,
    ) -> None:
        if provider_factory is None:
            provider_factory = ProviderFactory.get_provider(
                connection_string_name or type(self).__name__
            )
        self._provider_factory = provider_factory
        self.command_timeout: float = Config.COMMAND_TIMEOUT

    @classmethod
    def from_connection_string(
        cls, connection_string: str, provider_name: Optional[str] = None
    ) -> "Database":
        factory = ProviderFactory.for_connection_string(
            connection_string, provider_name or Config.DEFAULT_PROVIDER
        )
        return cls(provider_factory=factory)

    @property
    def provider_factory(self) -> ProviderFactory:
        return self._provider_factory

    # --------------------------------------------------------------------- #
    # Factories
    # --------------------------------------------------------------------- #

    def create_connection(self) -> DbConnection:
        return self._provider_factory.create_connection()

    def create_command(
        self, text: str, command_type: CommandType = CommandType.TEXT, *parameters: Parameter
    ) -> DbCommand:
        """Create a command bound to a new, closed connection."""
        command = self._provider_factory.create_command()
        command.connection = self.create_connection()
        command.command_text = text
        command.command_type = command_type
        command.command_timeout = self.command_timeout
        command.parameters.extend(parameters)
        return command

    def create_adapter(
        self, text: str, command_type: CommandType = CommandType.TEXT, *parameters: Parameter
    ) -> DataAdapter:
        adapter = self._provider_factory.create_data_adapter()
        adapter.select_command = self.create_command(text, command_type, *parameters)
        return adapter

    def create_parameter(
        self,
        name: str,
        value: Any,
        db_type: Optional[DbType] = None,
        direction: ParameterDirection = ParameterDirection.INPUT,
        size: int = 0,
    ) -> Parameter:
        param = self._provider_factory.create_parameter()
        param.name = name
        param.value = value
        param.direction = direction
        param.size = size
        param.db_type = db_type if db_type is not None else infer_db_type(value)
        return param

    def transaction_scope(
        self, isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED
    ) -> TransactionScope:
        """Return a scope that begins its root transaction on a new connection."""
        return TransactionScope(self.create_connection(), isolation_level)

    # --------------------------------------------------------------------- #
    # Execution
    # --------------------------------------------------------------------- #

    def execute_non_query(
        self,
        command: CommandLike,
        *parameters: Parameter,
        command_type: CommandType = CommandType.TEXT,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Execute a command that returns no rows.

        Returns:
            Number of affected rows, or -1 when the driver does not report it.
        """
        descriptor = _as_command(command, parameters, command_type)
        db_command = self._build(descriptor, timeout)
        with self._prepared(db_command, descriptor):
            return db_command.execute_non_query()

    def execute_scalar(
        self,
        command: CommandLike,
        *parameters: Parameter,
        command_type: CommandType = CommandType.TEXT,
        timeout: Optional[float] = None,
    ) -> Any:
        """Execute a query and return the first column of the first row (or None)."""
        descriptor = _as_command(command, parameters, command_type)
        db_command = self._build(descriptor, timeout)
        with self._prepared(db_command, descriptor):
            return db_command.execute_scalar()

    def execute_reader(
        self,
        command: CommandLike,
        *parameters: Parameter,
        command_type: CommandType = CommandType.TEXT,
        timeout: Optional[float] = None,
    ) -> DataReader:
        """
        Execute a query and return a forward-only reader.

        Outside a transaction the reader owns its connection and closes it
        once the rows are exhausted or the reader is closed.
        """
        descriptor = _as_command(command, parameters, command_type)
        db_command = self._build(descriptor, timeout)
        with self._prepared(db_command, descriptor, release=False) as ambient:
            return db_command.execute_reader(close_connection=ambient is None)

    def execute_table(
        self,
        command: CommandLike,
        *parameters: Parameter,
        command_type: CommandType = CommandType.TEXT,
        timeout: Optional[float] = None,
    ) -> pd.DataFrame:
        """Execute a query and materialize the result set as a DataFrame."""
        descriptor = _as_command(command, parameters, command_type)
        adapter = self.create_adapter(
            descriptor.text, descriptor.command_type, *descriptor.parameters
        )
        if timeout is not None:
            adapter.select_command.command_timeout = timeout
        with self._prepared(adapter.select_command, descriptor):
            return adapter.fill()

    def execute_row(
        self,
        command: CommandLike,
        *parameters: Parameter,
        command_type: CommandType = CommandType.TEXT,
        timeout: Optional[float] = None,
    ) -> Optional[pd.Series]:
        """Execute a query and return its first row, or None when it returns no rows."""
        table = self.execute_table(
            command, *parameters, command_type=command_type, timeout=timeout
        )
        if table.empty:
            return None
        return table.iloc[0]

    # --------------------------------------------------------------------- #
    # Internals
    # --------------------------------------------------------------------- #

    def _build(self, descriptor: Command, timeout: Optional[float]) -> DbCommand:
        db_command = self.create_command(
            descriptor.text, descriptor.command_type, *descriptor.parameters
        )
        if timeout is not None:
            db_command.command_timeout = timeout
        return db_command

    @contextmanager
    def _prepared(
        self, db_command: DbCommand, descriptor: Command, *, release: bool = True
    ) -> Iterator[Optional[Transaction]]:
        """
        Attach the command to the ambient transaction or to a private connection.

        Yields the ambient transaction (None when running privately). The
        private connection is closed on exit unless ``release`` is False, in
        which case it is only closed when the block fails.
        """
        ambient = get_current_transaction()
        private: Optional[DbConnection] = None
        succeeded = False
        try:
            if ambient is not None:
                _enlist(db_command, ambient)
            else:
                private = db_command.connection
                private.open()
            yield ambient
            succeeded = True
            logger.debug(
                "command_executed",
                command_type=descriptor.command_type.label,
                command_text=descriptor.text,
                in_transaction=ambient is not None,
            )
        except (ProgrammingError, CommandFailure):
            raise
        except Exception as exc:
            failure = CommandFailure(
                exc, descriptor.text, descriptor.command_type, descriptor.parameters
            )
            logger.error("command_failed", **failure.as_log_dict())
            raise failure from exc
        finally:
            if private is not None and (release or not succeeded):
                private.close()


def _enlist(db_command: DbCommand, transaction: Transaction) -> None:
    if not transaction.handle.is_active:
        raise ProgrammingError(
            f"ambient transaction is no longer active ({transaction.handle.state.value})"
        )
    db_command.connection = transaction.connection
    db_command.transaction = transaction.db_transaction


def _as_command(command: CommandLike, parameters, command_type: CommandType) -> Command:
    if isinstance(command, Command):
        if parameters:
            raise ProgrammingError("pass parameters inside the Command, not alongside it")
        return command
    return Command(text=command, command_type=command_type, parameters=tuple(parameters))
