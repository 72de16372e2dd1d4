"""
Thin wrappers over DB-API 2.0 connections and cursors.

PEP 249 has no notion of a closed-but-configured connection, an explicit
transaction object or a command object. The wrappers here add those on top
of a raw driver connection; backend differences are delegated to the
``DriverProvider`` that created them.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from ambientdb.core.command import CommandType, Parameter, ParameterDirection
from ambientdb.core.exceptions import DriverError, ProgrammingError

if TYPE_CHECKING:
    from ambientdb.core.providers import DriverProvider


class ConnectionState(str, Enum):
    CLOSED = "Closed"
    OPEN = "Open"


class IsolationLevel(str, Enum):
    """Transaction isolation levels; UNSPECIFIED keeps the driver default."""

    UNSPECIFIED = "Unspecified"
    READ_UNCOMMITTED = "ReadUncommitted"
    READ_COMMITTED = "ReadCommitted"
    REPEATABLE_READ = "RepeatableRead"
    SERIALIZABLE = "Serializable"
    SNAPSHOT = "Snapshot"
    CHAOS = "Chaos"


class DbConnection:
    """A driver connection that can be created closed and opened later."""

    def __init__(self, provider: "DriverProvider", connection_string: str = "") -> None:
        self.provider = provider
        self.connection_string = connection_string
        self.autocommit = False
        self._raw: Any = None
        self._transaction: Optional[DbTransaction] = None

    @property
    def state(self) -> ConnectionState:
        return ConnectionState.CLOSED if self._raw is None else ConnectionState.OPEN

    @property
    def raw(self) -> Any:
        """The underlying DB-API connection."""
        if self._raw is None:
            raise ProgrammingError("connection is not open")
        return self._raw

    @property
    def transaction(self) -> Optional["DbTransaction"]:
        return self._transaction

    def open(self) -> None:
        """
        Open the driver connection.

        Raises:
            ProgrammingError: If the connection is already open.
            DriverError: If the driver fails to connect.
        """
        if self._raw is not None:
            raise ProgrammingError("connection is already open")
        try:
            raw = self.provider.connect(self.connection_string)
        except Exception as exc:
            raise DriverError(f"failed to open {self.provider.name} connection: {exc}") from exc
        self.autocommit = self.provider.enable_autocommit(raw)
        self._raw = raw

    def close(self) -> None:
        """Close the driver connection. Closing a closed connection is a no-op."""
        raw, self._raw = self._raw, None
        if self._transaction is not None:
            # Closing the connection ends its transaction on the server
            self._transaction.dispose()
        if raw is None:
            return
        try:
            raw.close()
        except Exception as exc:
            raise DriverError(f"failed to close {self.provider.name} connection: {exc}") from exc

    def begin_transaction(
        self, isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED
    ) -> "DbTransaction":
        """
        Begin a driver-level transaction on this open connection.

        Raises:
            ProgrammingError: If the connection is closed or already in a transaction.
            DriverError: If the driver refuses to begin the transaction.
        """
        raw = self.raw
        if self._transaction is not None:
            raise ProgrammingError("connection already has an active transaction")
        try:
            self.provider.begin(raw, isolation_level)
        except Exception as exc:
            raise DriverError(
                f"failed to begin {isolation_level.value} transaction: {exc}"
            ) from exc
        self._transaction = DbTransaction(self, isolation_level)
        return self._transaction

    def _release_transaction(self, transaction: "DbTransaction") -> None:
        if self._transaction is transaction:
            self._transaction = None

    def __enter__(self) -> "DbConnection":
        if self.state is ConnectionState.CLOSED:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DbTransaction:
    """A driver-level transaction bound to one open connection."""

    def __init__(self, connection: DbConnection, isolation_level: IsolationLevel) -> None:
        self.connection = connection
        self.isolation_level = isolation_level
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def commit(self) -> None:
        self._finish(self.connection.provider.commit, "commit")

    def rollback(self) -> None:
        self._finish(self.connection.provider.rollback, "rollback")

    def dispose(self) -> None:
        self._finished = True
        self.connection._release_transaction(self)

    def _finish(self, action, verb: str) -> None:
        if self._finished:
            raise ProgrammingError(f"cannot {verb}: transaction already finished")
        raw = self.connection.raw
        try:
            action(raw)
        except Exception as exc:
            # The driver transaction is still open; it can be rolled back
            raise DriverError(f"transaction {verb} failed: {exc}") from exc
        self._finished = True
        self.connection._release_transaction(self)
        if self.connection.autocommit:
            try:
                self.connection.provider.enable_autocommit(raw)
            except Exception as exc:
                raise DriverError(f"failed to restore autocommit after {verb}: {exc}") from exc


class DbCommand:
    """A command bound to a connection and, optionally, a transaction."""

    def __init__(self, provider: "DriverProvider") -> None:
        self.provider = provider
        self.command_text = ""
        self.command_type = CommandType.TEXT
        self.command_timeout: float = 30
        self.parameters: List[Parameter] = []
        self.connection: Optional[DbConnection] = None
        self.transaction: Optional[DbTransaction] = None

    def execute_non_query(self) -> int:
        cursor = self._execute()
        try:
            rowcount = cursor.rowcount
            self._commit_if_autonomous()
        finally:
            cursor.close()
        return rowcount if rowcount is not None else -1

    def execute_scalar(self) -> Any:
        cursor = self._execute()
        try:
            row = cursor.fetchone() if cursor.description else None
            self._commit_if_autonomous()
        finally:
            cursor.close()
        if row is None:
            return None
        return row[0]

    def execute_reader(self, close_connection: bool = False) -> "DataReader":
        cursor = self._execute()
        return DataReader(cursor, connection=self.connection if close_connection else None)

    def _execute(self) -> Any:
        if self.connection is None:
            raise ProgrammingError("command has no connection")
        raw = self.connection.raw
        if self.transaction is not None:
            if self.transaction.connection is not self.connection:
                raise ProgrammingError("command transaction belongs to another connection")
            if self.transaction.finished:
                raise ProgrammingError("command transaction has already finished")

        cursor = raw.cursor()
        try:
            with self.provider.command_deadline(raw, self.command_timeout):
                if self.command_type is CommandType.STORED_PROCEDURE:
                    self._call_procedure(cursor)
                elif self.parameters:
                    cursor.execute(
                        self.command_text,
                        self.provider.bind_parameters(self.command_text, self.parameters),
                    )
                else:
                    cursor.execute(self.command_text)
        except BaseException:
            cursor.close()
            raise
        return cursor

    def _call_procedure(self, cursor: Any) -> None:
        bound = [
            p for p in self.parameters if p.direction is not ParameterDirection.RETURN_VALUE
        ]
        result = cursor.callproc(self.command_text, [p.value for p in bound])
        if result is None:
            return
        for param, value in zip(bound, result):
            if param.direction.is_output:
                param.value = value

    def _commit_if_autonomous(self) -> None:
        # Without a transaction and without driver autocommit, each command commits itself.
        if self.transaction is None and not self.connection.autocommit:
            self.provider.commit(self.connection.raw)


class DataReader:
    """
    Forward-only reader over a cursor.

    When created with a connection, the reader owns it and closes it once the
    rows are exhausted or the reader is closed.
    """

    def __init__(self, cursor: Any, connection: Optional[DbConnection] = None) -> None:
        self._cursor = cursor
        self._connection = connection
        self._closed = False
        self.columns: Tuple[str, ...] = tuple(
            column[0] for column in (cursor.description or ())
        )
        self.rowcount: int = cursor.rowcount if cursor.rowcount is not None else -1

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> Optional[DbConnection]:
        """The connection owned by this reader, if any."""
        return self._connection

    def read(self) -> Optional[Tuple[Any, ...]]:
        """Return the next row, or None once the reader is exhausted."""
        if self._closed:
            return None
        row = self._cursor.fetchone() if self.columns else None
        if row is None:
            self.close()
            return None
        return tuple(row)

    def fetchall(self) -> List[Tuple[Any, ...]]:
        if self._closed:
            return []
        rows = [tuple(row) for row in self._cursor.fetchall()] if self.columns else []
        self.close()
        return rows

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        while True:
            row = self.read()
            if row is None:
                return
            yield row

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._cursor.close()
        finally:
            if self._connection is not None:
                self._connection.close()

    def __enter__(self) -> "DataReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DataAdapter:
    """Fills a ``pandas.DataFrame`` from a select command."""

    def __init__(self, select_command: Optional[DbCommand] = None) -> None:
        self.select_command = select_command

    def fill(self) -> pd.DataFrame:
        """
        Run the select command and materialize every row.

        Opens the command's connection when it is closed and closes it again
        afterwards; an already open connection is left open.
        """
        command = self.select_command
        if command is None or command.connection is None:
            raise ProgrammingError("data adapter has no select command connection")

        connection = command.connection
        opened_here = connection.state is ConnectionState.CLOSED
        if opened_here:
            connection.open()
        try:
            with command.execute_reader() as reader:
                rows: Sequence[Tuple[Any, ...]] = reader.fetchall()
                columns = list(reader.columns)
        finally:
            if opened_here:
                connection.close()
        return pd.DataFrame.from_records(rows, columns=columns)
