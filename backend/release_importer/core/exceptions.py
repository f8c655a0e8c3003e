"""
Exception taxonomy for the release importer.

Row-scoped errors are recorded in the failure ledger and never stop a batch.
Session-scoped errors propagate to the caller.
"""

ROW_ERROR_CATEGORIES = ("validation", "duplicate", "storage", "unknown")


class ImporterError(Exception):
    """Base exception for all importer errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class RowError(ImporterError):
    """Raised when a single source row cannot be translated."""

    category = "unknown"

    def __init__(self, message: str, category: str | None = None):
        super().__init__(message)
        if category is not None:
            if category not in ROW_ERROR_CATEGORIES:
                raise ValueError(f"Unknown row error category: {category}")
            self.category = category


class RowValidationError(RowError):
    """Raised when a row is missing a required field or has an unusable value."""

    category = "validation"


class DuplicateRowError(RowError):
    """Raised when a row collides with a unique constraint."""

    category = "duplicate"


class StorageUnavailableError(ImporterError):
    """Raised when the storage layer cannot be reached; aborts the session."""


class StorageBusyError(ImporterError):
    """Raised when the database reports lock contention such as a deadlock.

    The slice has been rolled back and the session is untouched; call again later.
    """


class ConflictError(ImporterError):
    """Raised when the owner already has an active import session."""

    def __init__(self, message: str, active_session_id: str | None = None):
        super().__init__(message)
        self.active_session_id = active_session_id


class StaleCheckpointError(ImporterError):
    """Raised when a batch call assumed a checkpoint that is no longer current."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Checkpoint moved: expected {expected}, current {actual}. "
            "Re-fetch progress and retry with the corrected slice."
        )
        self.expected = expected
        self.actual = actual


class SessionNotFoundError(ImporterError):
    """Raised when an import session does not exist."""


class SessionOwnershipError(ImporterError):
    """Raised when a user addresses a session owned by someone else."""


class InvalidTransitionError(ImporterError):
    """Raised when a lifecycle call is not allowed from the session's status."""


class MappingError(ImporterError):
    """Raised when a column mapping set violates its invariants."""


class SourceUnavailableError(ImporterError):
    """Raised when rows past the checkpoint are needed but no source is available."""


class CsvFormatError(ImporterError):
    """Raised when an uploaded file cannot be read as CSV."""
