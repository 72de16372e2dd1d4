"""
Ambient transactions for ambientdb.

A ``TransactionScope`` begins a transaction on entry and installs it as the
ambient transaction of the current execution context. Every ``Database``
call made while the scope is active runs on that transaction's connection.
Nested scopes do not begin new driver transactions; they install a
``DependentTransaction`` that shares the root's ``TransactionHandle``.

Only the outermost (root) scope ever commits. Any scope that exits without
``complete()`` rolls the shared transaction back, so a single failing unit
of work anywhere in the chain aborts the whole chain.

Usage::

    with TransactionScope(db.create_connection()) as scope:
        db.execute_non_query("INSERT INTO t VALUES (1)")
        save_audit_row(db)  # may open its own nested scope
        scope.complete()
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextvars import ContextVar, Token
from enum import Enum
from typing import Optional

from ambientdb.core.driver import ConnectionState, DbConnection, DbTransaction, IsolationLevel
from ambientdb.core.exceptions import DriverError, ProgrammingError
from ambientdb.utils.logging_config import get_logger


logger = get_logger(__name__)


# Every thread starts with an empty context, so the ambient transaction is
# never visible across threads. asyncio tasks inherit a copy on creation.
_current_transaction: ContextVar[Optional["Transaction"]] = ContextVar(
    "ambientdb_current_transaction", default=None
)


def get_current_transaction() -> Optional["Transaction"]:
    """Return the ambient transaction of the current context, if any."""
    return _current_transaction.get()


class TransactionState(str, Enum):
    ACTIVE = "Active"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"
    DISPOSED = "Disposed"


class TransactionHandle:
    """
    Owns one driver transaction and, optionally, the connection it runs on.

    Shared by the root transaction and all of its dependent clones. Rollback
    and dispose are idempotent so unwinding scopes may call them repeatedly.
    """

    def __init__(self, db_transaction: DbTransaction, owns_connection: bool = False) -> None:
        self.db_transaction = db_transaction
        self.owns_connection = owns_connection
        self._outcome = TransactionState.ACTIVE
        self._disposed = False

    @property
    def connection(self) -> DbConnection:
        return self.db_transaction.connection

    @property
    def isolation_level(self) -> IsolationLevel:
        return self.db_transaction.isolation_level

    @property
    def state(self) -> TransactionState:
        if self._disposed:
            return TransactionState.DISPOSED
        return self._outcome

    @property
    def is_active(self) -> bool:
        return not self._disposed and self._outcome is TransactionState.ACTIVE

    @property
    def rolled_back(self) -> bool:
        return self._outcome is TransactionState.ROLLED_BACK

    @property
    def committed(self) -> bool:
        return self._outcome is TransactionState.COMMITTED

    @property
    def disposed(self) -> bool:
        return self._disposed

    def rollback(self) -> None:
        """Roll back the driver transaction; a no-op once resolved or disposed."""
        if not self.is_active:
            return
        try:
            # Closing the connection already ended the driver transaction
            if not self.db_transaction.finished:
                self.db_transaction.rollback()
        finally:
            # A failed rollback leaves nothing to retry
            self._outcome = TransactionState.ROLLED_BACK
        logger.info("transaction_rolled_back", isolation_level=self.isolation_level.value)

    def commit(self) -> None:
        """
        Commit the driver transaction.

        Raises:
            ProgrammingError: If the transaction was already resolved or disposed.
            DriverError: If the driver fails to commit.
        """
        if self._disposed:
            raise ProgrammingError("cannot commit a disposed transaction")
        if self._outcome is TransactionState.ROLLED_BACK:
            raise ProgrammingError("cannot commit a transaction that was rolled back")
        if self._outcome is TransactionState.COMMITTED:
            raise ProgrammingError("transaction has already been committed")

        self.db_transaction.commit()
        self._outcome = TransactionState.COMMITTED
        logger.info("transaction_committed", isolation_level=self.isolation_level.value)

    def dispose(self) -> None:
        """Release the driver transaction and any connection the handle owns."""
        if self._disposed:
            return
        try:
            if self._outcome is TransactionState.ACTIVE:
                self.rollback()
        except DriverError as exc:
            logger.warning("transaction_dispose_rollback_failed", error=str(exc))
        finally:
            self._disposed = True
            self.db_transaction.dispose()
            if self.owns_connection:
                self._close_connection()

    def _close_connection(self) -> None:
        _close_quietly(self.connection)


def _close_quietly(connection: DbConnection) -> None:
    try:
        connection.close()
    except DriverError as exc:
        logger.warning("transaction_connection_close_failed", error=str(exc))


class Transaction(ABC):
    """A participant in an ambient transaction chain."""

    def __init__(self, handle: TransactionHandle) -> None:
        self._handle = handle
        self.completed = False

    @property
    def handle(self) -> TransactionHandle:
        return self._handle

    @property
    def connection(self) -> DbConnection:
        return self._handle.connection

    @property
    def db_transaction(self) -> DbTransaction:
        return self._handle.db_transaction

    def rollback(self) -> None:
        """Roll back the shared transaction. Safe to call repeatedly."""
        try:
            self._handle.rollback()
        finally:
            self.completed = True

    def dependent_clone(self) -> "DependentTransaction":
        return DependentTransaction(self)

    @abstractmethod
    def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    def dispose(self) -> None:
        """Release resources held by this participant."""

    @staticmethod
    def current() -> Optional["Transaction"]:
        return get_current_transaction()


class RootTransaction(Transaction):
    """The transaction that owns the driver transaction; the only one that commits."""

    @classmethod
    def begin(
        cls,
        connection: DbConnection,
        isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED,
        owns_connection: bool = False,
    ) -> "RootTransaction":
        """
        Begin a driver transaction on an open connection.

        Raises:
            ProgrammingError: If the connection is not open.
            DriverError: If the driver refuses to begin the transaction.
        """
        if connection.state is not ConnectionState.OPEN:
            raise ProgrammingError("connection must be open to begin a transaction")
        db_transaction = connection.begin_transaction(isolation_level)
        logger.info("transaction_begun", isolation_level=isolation_level.value)
        return cls(TransactionHandle(db_transaction, owns_connection=owns_connection))

    def commit(self) -> None:
        self._handle.commit()
        self.completed = True

    def dispose(self) -> None:
        self._handle.dispose()


class DependentTransaction(Transaction):
    """A clone sharing its parent's handle; it can roll back but never commit."""

    def __init__(self, inner_transaction: Transaction) -> None:
        super().__init__(inner_transaction.handle)
        self.inner_transaction = inner_transaction

    def commit(self) -> None:
        raise ProgrammingError(
            "a dependent transaction cannot commit; only the root scope commits"
        )

    def dispose(self) -> None:
        # The shared handle belongs to the root transaction
        pass


class TransactionScope:
    """
    Begin or join the ambient transaction for the duration of a ``with`` block.

    On exit the previous ambient transaction is restored. A scope that was not
    completed rolls the shared transaction back; a completed root scope
    commits. Exceptions raised in the block are never suppressed.
    """

    def __init__(
        self,
        connection: Optional[DbConnection] = None,
        isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED,
    ) -> None:
        self.connection = connection
        self.isolation_level = isolation_level
        self.completed = False
        self._transaction: Optional[Transaction] = None
        self._token: Optional[Token] = None
        self._entered = False
        self._exited = False

    @property
    def transaction(self) -> Optional[Transaction]:
        """The transaction installed as ambient while this scope is active."""
        return self._transaction

    @property
    def is_root(self) -> bool:
        return isinstance(self._transaction, RootTransaction)

    def __enter__(self) -> "TransactionScope":
        if self._entered:
            raise ProgrammingError("a transaction scope can only be entered once")

        previous = _current_transaction.get()
        if previous is None:
            transaction: Transaction = self._begin_root()
        else:
            transaction = previous.dependent_clone()

        self._entered = True
        self._transaction = transaction
        self._token = _current_transaction.set(transaction)
        return self

    def _begin_root(self) -> RootTransaction:
        connection = self.connection
        if connection is None:
            raise ProgrammingError("a connection is required to begin a root transaction")

        opened_here = connection.state is ConnectionState.CLOSED
        if opened_here:
            connection.open()
        try:
            return RootTransaction.begin(
                connection, self.isolation_level, owns_connection=opened_here
            )
        except BaseException:
            if opened_here:
                _close_quietly(connection)
            raise

    def complete(self) -> None:
        """Mark the unit of work as successful; resolution happens on exit."""
        if not self._entered or self._exited:
            raise ProgrammingError("complete() must be called inside an active scope")
        if self.completed:
            raise ProgrammingError("transaction scope has already been completed")
        self.completed = True

    def __exit__(self, exc_type, exc, tb) -> bool:
        transaction = self._transaction
        _current_transaction.reset(self._token)
        self._token = None
        self._exited = True

        try:
            if not self.completed:
                transaction.rollback()
            if isinstance(transaction, RootTransaction) and self.completed:
                transaction.commit()
        except (DriverError, ProgrammingError) as resolve_error:
            if exc is None:
                raise
            # The in-flight error wins; the failed resolution is only logged
            logger.error(
                "transaction_resolution_failed",
                error=str(resolve_error),
                original_error_type=exc_type.__name__,
            )
        finally:
            if isinstance(transaction, RootTransaction):
                transaction.dispose()
        return False
