"""
Database utility helpers.

Provides ``with``-block and decorator shorthands over ``TransactionScope``
for code that always completes its unit of work when the block finishes
without raising.
"""

from __future__ import annotations

from contextlib import contextmanager
from functools import wraps
from typing import TYPE_CHECKING, Callable, Iterator, TypeVar

from ambientdb.core.driver import IsolationLevel
from ambientdb.core.transaction import TransactionScope
from ambientdb.utils.logging_config import get_logger

if TYPE_CHECKING:
    from ambientdb.core.database import Database


logger = get_logger(__name__)

F = TypeVar("F", bound=Callable)


@contextmanager
def transactional(
    database: "Database", isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED
) -> Iterator[TransactionScope]:
    """
    Provide a transactional scope around a series of database operations.

    Joins the ambient transaction when one is active. The scope is completed
    when the block finishes normally; any exception escaping the block rolls
    the transaction back and propagates unchanged.
    """
    with database.transaction_scope(isolation_level) as scope:
        try:
            yield scope
        except Exception as exc:
            logger.error("transaction_rollback", error=str(exc), root=scope.is_root)
            raise
        scope.complete()


def transactional_method(
    isolation_level: IsolationLevel = IsolationLevel.UNSPECIFIED,
) -> Callable[[F], F]:
    """Wrap a ``Database`` method so its body runs inside ``transactional``."""

    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            with transactional(self, isolation_level):
                return fn(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
