"""Classify database errors raised while a slice is being written."""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, SQLAlchemyError

from release_importer.core.exceptions import StorageBusyError, StorageUnavailableError

# serialization_failure, deadlock_detected, lock_not_available, query_canceled (lock timeout)
CONTENTION_SQLSTATES = {"40001", "40P01", "55P03", "57014"}
CONNECTION_SQLSTATE_CLASS = "08"

# SQLite and MySQL report contention only in the message text.
CONTENTION_MESSAGES = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "lock wait timeout",
)


def _sqlstate(error: SQLAlchemyError) -> str | None:
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_connection_lost(error: SQLAlchemyError) -> bool:
    if isinstance(error, (DisconnectionError, InterfaceError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    sqlstate = _sqlstate(error)
    return bool(sqlstate) and sqlstate.startswith(CONNECTION_SQLSTATE_CLASS)


def is_contention(error: SQLAlchemyError) -> bool:
    """True for errors that go away if the same transaction is simply retried."""
    if not isinstance(error, DBAPIError) or is_connection_lost(error):
        return False
    if _sqlstate(error) in CONTENTION_SQLSTATES:
        return True
    message = str(error.orig).lower()
    return any(marker in message for marker in CONTENTION_MESSAGES)


def classify_storage_error(error: SQLAlchemyError) -> StorageBusyError | StorageUnavailableError:
    """Map a database error to the session-scoped importer error it implies."""
    if is_contention(error):
        return StorageBusyError(f"Database busy, slice rolled back: {error.orig}")
    return StorageUnavailableError(str(error))
