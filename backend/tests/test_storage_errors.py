"""
Tests for sorting database errors into busy and unavailable.
"""
import sqlite3

import pytest
from sqlalchemy.exc import DisconnectionError, OperationalError

from release_importer.core.exceptions import StorageBusyError, StorageUnavailableError
from release_importer.db.errors import classify_storage_error, is_connection_lost, is_contention


class DriverError(Exception):
    """A driver exception carrying a SQLSTATE, like psycopg's."""

    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def operational(orig, invalidated=False):
    return OperationalError("UPDATE import_sessions", {}, orig, connection_invalidated=invalidated)


class TestClassifyStorageError:
    @pytest.mark.parametrize(
        "orig",
        [
            sqlite3.OperationalError("database is locked"),
            sqlite3.OperationalError("database table is locked: artists"),
            DriverError("deadlock detected", "40P01"),
            DriverError("could not serialize access due to concurrent update", "40001"),
            DriverError("could not obtain lock on row", "55P03"),
            DriverError("canceling statement due to lock timeout", "57014"),
        ],
    )
    def test_contention_is_busy(self, orig):
        error = operational(orig)

        assert is_contention(error)
        assert isinstance(classify_storage_error(error), StorageBusyError)

    @pytest.mark.parametrize(
        "error",
        [
            operational(DriverError("server closed the connection unexpectedly", "08006")),
            operational(Exception("connection refused")),
            operational(sqlite3.OperationalError("database is locked"), invalidated=True),
            DisconnectionError("connection dropped"),
        ],
    )
    def test_everything_else_is_unavailable(self, error):
        assert not is_contention(error)
        assert isinstance(classify_storage_error(error), StorageUnavailableError)

    def test_connection_lost(self):
        assert is_connection_lost(operational(DriverError("terminating connection", "08003")))
        assert is_connection_lost(operational(Exception("gone"), invalidated=True))
        assert not is_connection_lost(operational(DriverError("deadlock detected", "40P01")))
