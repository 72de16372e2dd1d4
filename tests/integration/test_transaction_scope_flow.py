"""
Integration tests for ambient transactions against file-backed SQLite.

Committed state is always verified through a separate sqlite3 connection so
uncommitted rows held by a scope can never leak into the assertion.
"""

import sqlite3
import threading
from pathlib import Path

import pytest

from ambientdb.core.database import Database
from ambientdb.core.driver import ConnectionState
from ambientdb.core.exceptions import CommandFailure, DriverError, ProgrammingError
from ambientdb.core.transaction import (
    DependentTransaction,
    RootTransaction,
    TransactionScope,
    get_current_transaction,
)
from ambientdb.utils.database_utils import transactional, transactional_method


def _committed_rows(db_path: Path) -> int:
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute("SELECT COUNT(*) FROM t").fetchone()[0]
    finally:
        conn.close()


@pytest.fixture()
def db_path(tmp_path) -> Path:
    return tmp_path / "ambient.db"


@pytest.fixture()
def db(db_path) -> Database:
    database = Database.from_connection_string(str(db_path), "sqlite3")
    database.execute_non_query("CREATE TABLE t (id INTEGER PRIMARY KEY, label TEXT)")
    return database


class UnitOfWorkFailed(Exception):
    pass


class TestScopeScenarios:
    def test_error_before_complete_rolls_back(self, db, db_path):
        with pytest.raises(UnitOfWorkFailed):
            with TransactionScope(db.create_connection()) as scope:
                db.execute_non_query("INSERT INTO t VALUES (1, 'one')")
                raise UnitOfWorkFailed("before complete")

        assert _committed_rows(db_path) == 0
        assert get_current_transaction() is None

    def test_complete_commits(self, db, db_path):
        with TransactionScope(db.create_connection()) as scope:
            db.execute_non_query("INSERT INTO t VALUES (1, 'one')")
            scope.complete()

        assert _committed_rows(db_path) == 1

    def test_inner_completion_never_commits_when_outer_does_not(self, db, db_path):
        conn_a = db.create_connection()
        conn_b = db.create_connection()

        with TransactionScope(conn_a) as outer:
            assert isinstance(outer.transaction, RootTransaction)
            with TransactionScope(conn_b) as inner:
                assert isinstance(inner.transaction, DependentTransaction)
                db.execute_non_query("INSERT INTO t VALUES (1, 'nested')")
                inner.complete()

            assert outer.transaction.handle.is_active
            assert not outer.transaction.handle.committed
            assert conn_b.state is ConnectionState.CLOSED

        assert outer.transaction.handle.rolled_back
        assert _committed_rows(db_path) == 0

    def test_uncommitted_rows_are_invisible_outside_the_scope(self, db, db_path):
        with TransactionScope(db.create_connection()) as scope:
            db.execute_non_query("INSERT INTO t VALUES (1, 'pending')")

            assert db_path.exists()
            assert _committed_rows(db_path) == 0
            # Same transaction sees its own write
            assert db.execute_scalar("SELECT COUNT(*) FROM t") == 1
            scope.complete()

        assert _committed_rows(db_path) == 1

    def test_command_failure_inside_scope_rolls_back_whole_unit(self, db, db_path):
        with pytest.raises(CommandFailure) as exc_info:
            with TransactionScope(db.create_connection()) as scope:
                db.execute_non_query("INSERT INTO t VALUES (1, 'first')")
                db.execute_non_query("INSERT INTO t VALUES (1, 'duplicate')")
                scope.complete()

        assert isinstance(exc_info.value.original, sqlite3.IntegrityError)
        assert "duplicate" in exc_info.value.command_text
        assert _committed_rows(db_path) == 0

    def test_nested_failure_caught_by_outer_still_dooms_transaction(self, db, db_path):
        with pytest.raises(ProgrammingError) as exc_info:
            with TransactionScope(db.create_connection()) as outer:
                db.execute_non_query("INSERT INTO t VALUES (1, 'outer')")
                try:
                    with TransactionScope():
                        db.execute_non_query("INSERT INTO t VALUES (2, 'inner')")
                        raise UnitOfWorkFailed("inner")
                except UnitOfWorkFailed:
                    pass
                outer.complete()

        assert "rolled back" in str(exc_info.value)
        assert _committed_rows(db_path) == 0


class TestFailedCommit:
    @pytest.fixture()
    def deferred_db(self, db):
        db.execute_non_query("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
        db.execute_non_query(
            "CREATE TABLE child (parent_id INTEGER "
            "REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
        )
        return db

    def test_failed_commit_raises_driver_error_and_closes_owned_connection(self, deferred_db):
        connection = deferred_db.create_connection()

        with pytest.raises(DriverError) as exc_info:
            with TransactionScope(connection) as scope:
                deferred_db.execute_non_query("INSERT INTO child VALUES (42)")
                scope.complete()

        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
        assert not scope.transaction.handle.committed
        assert scope.transaction.handle.disposed
        assert connection.state is ConnectionState.CLOSED
        assert get_current_transaction() is None

    def test_failed_commit_rolls_back_caller_owned_connection(self, deferred_db, db_path):
        connection = deferred_db.create_connection()
        connection.open()
        try:
            with pytest.raises(DriverError):
                with TransactionScope(connection) as scope:
                    deferred_db.execute_non_query("INSERT INTO t VALUES (1, 'lost')")
                    deferred_db.execute_non_query("INSERT INTO child VALUES (42)")
                    scope.complete()

            assert scope.transaction.handle.rolled_back
            assert scope.transaction.handle.disposed
            assert connection.state is ConnectionState.OPEN
            assert connection.transaction is None
            assert connection.raw.in_transaction is False

            with TransactionScope(connection) as retry:
                deferred_db.execute_non_query("INSERT INTO t VALUES (2, 'kept')")
                retry.complete()
        finally:
            connection.close()

        assert _committed_rows(db_path) == 1


class TestTransactionalHelpers:
    def test_transactional_commits_on_success(self, db, db_path):
        with transactional(db) as scope:
            db.execute_non_query("INSERT INTO t VALUES (1, 'helper')")
            assert scope.is_root

        assert _committed_rows(db_path) == 1

    def test_transactional_rolls_back_and_reraises(self, db, db_path):
        with pytest.raises(UnitOfWorkFailed):
            with transactional(db):
                db.execute_non_query("INSERT INTO t VALUES (1, 'helper')")
                raise UnitOfWorkFailed()

        assert _committed_rows(db_path) == 0

    def test_decorated_methods_share_one_transaction(self, db_path):
        class Ledger(Database):
            @transactional_method()
            def record(self, entry_id, label):
                self.execute_non_query(
                    "INSERT INTO t VALUES (?, ?)",
                    self.create_parameter("@id", entry_id),
                    self.create_parameter("@label", label),
                )

            @transactional_method()
            def record_pair(self, first_id, second_id):
                self.record(first_id, "first")
                assert isinstance(get_current_transaction(), RootTransaction)
                self.record(second_id, "second")

        ledger = Ledger.from_connection_string(str(db_path), "sqlite3")
        ledger.execute_non_query("CREATE TABLE t (id INTEGER PRIMARY KEY, label TEXT)")

        ledger.record_pair(1, 2)
        assert _committed_rows(db_path) == 2

        with pytest.raises(CommandFailure):
            ledger.record_pair(3, 1)
        assert _committed_rows(db_path) == 2


class TestAmbientIsolation:
    def test_threads_never_observe_each_others_transaction(self, tmp_path):
        barrier = threading.Barrier(2)
        observed = {}
        errors = []

        def _unit_of_work(label):
            try:
                database = Database.from_connection_string(
                    str(tmp_path / f"{label}.db"), "sqlite3"
                )
                database.execute_non_query("CREATE TABLE t (id INTEGER PRIMARY KEY, label TEXT)")
                assert get_current_transaction() is None
                with TransactionScope(database.create_connection()) as scope:
                    database.execute_non_query(
                        "INSERT INTO t VALUES (1, :label)",
                        database.create_parameter("@label", label),
                    )
                    barrier.wait(timeout=10)
                    observed[label] = (scope.transaction, get_current_transaction())
                    barrier.wait(timeout=10)
                    assert database.execute_scalar("SELECT label FROM t") == label
                    scope.complete()
            except Exception as exc:  # surfaced to the main thread below
                errors.append(exc)

        threads = [
            threading.Thread(target=_unit_of_work, args=(label,)) for label in ("left", "right")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        left_installed, left_seen = observed["left"]
        right_installed, right_seen = observed["right"]
        assert left_seen is left_installed
        assert right_seen is right_installed
        assert left_installed is not right_installed
        assert left_installed.handle is not right_installed.handle
        assert get_current_transaction() is None
        assert _committed_rows(tmp_path / "left.db") == 1
        assert _committed_rows(tmp_path / "right.db") == 1
