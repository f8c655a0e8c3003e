"""Advance an import session by one bounded slice of rows.

Each call reads the committed checkpoint, translates rows
``[checkpoint, checkpoint + batch_size)`` and commits the entity writes, the
failure ledger entries and the new checkpoint in one transaction. The
checkpoint update is a compare-and-set on the previously read value, so a
retried or concurrent call can never apply the same slice twice.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from release_importer.core.config import Settings, get_settings
from release_importer.core.exceptions import (
    CsvFormatError,
    ImporterError,
    MappingError,
    RowError,
    SessionNotFoundError,
    SourceUnavailableError,
    StaleCheckpointError,
    StorageBusyError,
    StorageUnavailableError,
)
from release_importer.db.errors import classify_storage_error
from release_importer.db.models import ImportSession
from release_importer.db.models.import_session import (
    ACTIVE_STATUSES,
    COMPLETED,
    COMPLETED_WITH_ERRORS,
    FAILED,
    IN_PROGRESS,
    PAUSED,
    PENDING,
)
from release_importer.services.csv_source import SourceSlice, load_slice
from release_importer.services.failure_ledger import count_unresolved, record_failure
from release_importer.services.import_sessions import get_session, utcnow
from release_importer.services.progress_tracker import publish_progress
from release_importer.services.translator import RowTranslator

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = (
    "artists_created",
    "releases_created",
    "tracks_created",
    "platform_requests_created",
)


@dataclass
class BatchResult:
    session_id: str
    rows_processed: int
    total_rows: int
    completed: bool
    needs_more: bool
    paused: bool
    status: str
    slice_size: int = 0
    failed_in_slice: int = 0

    @classmethod
    def from_session(
        cls, session: ImportSession, slice_size: int = 0, failed_in_slice: int = 0
    ) -> "BatchResult":
        status = session.status
        return cls(
            session_id=session.id,
            rows_processed=session.rows_processed,
            total_rows=session.total_rows,
            completed=status in (COMPLETED, COMPLETED_WITH_ERRORS),
            needs_more=status == IN_PROGRESS and session.rows_processed < session.total_rows,
            paused=status == PAUSED,
            status=status,
            slice_size=slice_size,
            failed_in_slice=failed_in_slice,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def advance(
    db: Session,
    session_id: str,
    source_rows: Sequence[Mapping[str, Any]] | None = None,
    expected_checkpoint: int | None = None,
    settings: Settings | None = None,
) -> BatchResult:
    """Process the next slice of a session.

    ``source_rows`` lets the caller supply the slice instead of reading the
    retained source; it must be accompanied by ``expected_checkpoint``, the
    row offset the supplied rows start at.

    Raises:
        StaleCheckpointError: ``expected_checkpoint`` no longer matches, or another
            writer committed the checkpoint first. Nothing is applied.
        SourceUnavailableError: no rows were supplied and no source is retained.
        StorageBusyError: the database reported lock contention. The slice was
            rolled back and the session is unchanged; call again later.
        StorageUnavailableError, MappingError, CsvFormatError: the session has been
            marked failed.
    """
    settings = settings or get_settings()
    if source_rows is not None and expected_checkpoint is None:
        raise ValueError("expected_checkpoint is required when rows are supplied")

    try:
        return _advance(db, session_id, source_rows, expected_checkpoint, settings)
    except SQLAlchemyError as e:
        db.rollback()
        error = classify_storage_error(e)
        _handle_session_error(db, session_id, error)
        raise error from e
    except (StorageBusyError, StorageUnavailableError, MappingError, CsvFormatError) as e:
        db.rollback()
        _handle_session_error(db, session_id, e)
        raise


def _advance(
    db: Session,
    session_id: str,
    source_rows: Sequence[Mapping[str, Any]] | None,
    expected_checkpoint: int | None,
    settings: Settings,
) -> BatchResult:
    session = get_session(db, session_id)
    if session.is_terminal or session.status == PAUSED:
        return BatchResult.from_session(session)

    if expected_checkpoint is not None and expected_checkpoint != session.rows_processed:
        raise StaleCheckpointError(expected_checkpoint, session.rows_processed)

    if session.status == PENDING:
        _set_status(db, session, (PENDING,), status=IN_PROGRESS, started_at=utcnow())
        if session.status != IN_PROGRESS:
            return BatchResult.from_session(session)

    if session.pause_requested:
        _set_status(db, session, (IN_PROGRESS,), status=PAUSED, pause_requested=False)
        logger.info(f"Session {session.id} paused at row {session.rows_processed}")
        return BatchResult.from_session(session)

    start = session.rows_processed
    stop = min(start + settings.import_batch_size, session.total_rows)
    source = _slice_rows(session, start, stop, source_rows)
    result = _process_slice(db, session, start, source, settings)

    if result.slice_size or result.status != IN_PROGRESS:
        _publish(session, result)
    return result


def _handle_session_error(db: Session, session_id: str, error: ImporterError) -> None:
    if isinstance(error, StorageBusyError):
        logger.warning(f"Session {session_id}: {error.message}; checkpoint unchanged")
        return
    _mark_failed(db, session_id, error)


def _slice_rows(
    session: ImportSession,
    start: int,
    stop: int,
    source_rows: Sequence[Mapping[str, Any]] | None,
) -> SourceSlice:
    if stop <= start:
        return SourceSlice(rows=[])
    if source_rows is not None:
        rows = list(source_rows)[: stop - start]
        if not rows:
            raise SourceUnavailableError(
                f"No rows supplied for session {session.id} at row {start + 1}"
            )
        return SourceSlice(rows=rows)

    source = load_slice(session, start, stop)
    if not source.rows:
        raise CsvFormatError(
            f"Source ended at row {start}, but the session expects {session.total_rows} rows"
        )
    return source


def _process_slice(
    db: Session,
    session: ImportSession,
    start: int,
    source: SourceSlice,
    settings: Settings,
) -> BatchResult:
    rows = source.rows
    translator = RowTranslator(db, session.mapping_config, settings)
    totals: Counter[str] = Counter()
    failed_in_slice = 0

    logger.info(f"Session {session.id}: processing rows {start + 1}-{start + len(rows)}")
    for offset, row in enumerate(rows):
        row_number = start + offset + 1
        try:
            result = translator.translate(row, row_number)
        except RowError as e:
            record_failure(db, session.id, row_number, row, e)
            failed_in_slice += 1
            continue
        for name in COUNTER_COLUMNS:
            totals[name] += getattr(result, name)

    db.flush()
    new_checkpoint = start + len(rows)
    committed = _commit_checkpoint(
        db, session, start, new_checkpoint, source.end_offset, totals
    )
    if not committed:
        db.rollback()
        current = db.get(ImportSession, session.id)
        if current is None:
            raise SessionNotFoundError(f"Import session {session.id} not found")
        if current.is_terminal or current.status == PAUSED:
            logger.info(
                f"Session {session.id} became {current.status} mid-slice; slice discarded"
            )
            return BatchResult.from_session(current)
        raise StaleCheckpointError(start, current.rows_processed)

    db.commit()
    db.refresh(session)
    logger.info(
        f"Session {session.id}: checkpoint {session.rows_processed}/{session.total_rows} "
        f"({failed_in_slice} failed in slice, status {session.status})"
    )
    return BatchResult.from_session(session, len(rows), failed_in_slice)


def _commit_checkpoint(
    db: Session,
    session: ImportSession,
    observed: int,
    new_checkpoint: int,
    end_offset: int | None,
    totals: Counter[str],
) -> bool:
    now = utcnow()
    values: dict[str, Any] = {
        "rows_processed": new_checkpoint,
        "last_checkpoint_at": now,
        "pause_requested": False,
        "source_offset": end_offset,
    }
    for name in COUNTER_COLUMNS:
        if totals[name]:
            values[name] = getattr(ImportSession, name) + totals[name]

    if new_checkpoint >= session.total_rows:
        has_failures = count_unresolved(db, session.id) > 0
        values["status"] = COMPLETED_WITH_ERRORS if has_failures else COMPLETED
        values["completed_at"] = now
    else:
        # A pause requested while the slice ran takes effect with this commit.
        values["status"] = case(
            (ImportSession.pause_requested.is_(True), PAUSED),
            else_=ImportSession.status,
        )

    result = db.execute(
        update(ImportSession)
        .where(
            ImportSession.id == session.id,
            ImportSession.rows_processed == observed,
            ImportSession.status == IN_PROGRESS,
        )
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _set_status(db: Session, session: ImportSession, from_statuses, **values) -> None:
    db.execute(
        update(ImportSession)
        .where(ImportSession.id == session.id, ImportSession.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)


def _mark_failed(db: Session, session_id: str, error: ImporterError) -> None:
    logger.error(f"Session {session_id} failed: {error.message}", exc_info=error)
    try:
        db.execute(
            update(ImportSession)
            .where(ImportSession.id == session_id, ImportSession.status.in_(ACTIVE_STATUSES))
            .values(status=FAILED, error=error.message, completed_at=utcnow(), pause_requested=False)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not record failure for session {session_id}: {e}")
        return
    publish_progress(session_id, 0.0, error.message, status=FAILED)


def _publish(session: ImportSession, result: BatchResult) -> None:
    fraction = result.rows_processed / result.total_rows if result.total_rows else 1.0
    publish_progress(
        session.id,
        fraction,
        f"Processed {result.rows_processed}/{result.total_rows} rows",
        status=result.status,
        meta={
            "slice_size": result.slice_size,
            "failed_in_slice": result.failed_in_slice,
            **{name: getattr(session, name) for name in COUNTER_COLUMNS},
        },
    )
