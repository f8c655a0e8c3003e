"""Lifecycle of import sessions: create, pause, resume, cancel and cleanup."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from release_importer.api.schemas.mapping import ColumnMapping
from release_importer.core.config import get_settings
from release_importer.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    MappingError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from release_importer.db.models import FailedRow, ImportSession, RowResolution
from release_importer.db.models.import_session import (
    ACTIVE_STATUSES,
    CANCELLED,
    IN_PROGRESS,
    PAUSED,
    PENDING,
)
from release_importer.services.column_mapping import validate_mapping_set
from release_importer.services.progress_tracker import clear_progress
from release_importer.storage.file_storage import delete_source_from_redis, stage_source
from release_importer.storage.uploads import delete_upload, file_hash

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_active_session_for_owner(db: Session, owner: str) -> ImportSession | None:
    return db.execute(
        select(ImportSession)
        .where(ImportSession.created_by == owner, ImportSession.status.in_(ACTIVE_STATUSES))
        .order_by(ImportSession.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_session(db: Session, session_id: str) -> ImportSession:
    session = db.get(ImportSession, session_id)
    if session is None:
        raise SessionNotFoundError(f"Import session {session_id} not found")
    return session


def get_session_for_owner(db: Session, session_id: str, owner: str) -> ImportSession:
    session = get_session(db, session_id)
    if session.created_by != owner:
        raise SessionOwnershipError(f"Import session {session_id} belongs to another user")
    return session


def _conflict(db: Session, owner: str) -> ConflictError:
    active = get_active_session_for_owner(db, owner)
    active_id = active.id if active else None
    return ConflictError(
        f"User {owner} already has an active import session",
        active_session_id=active_id,
    )


def create_session(
    db: Session,
    *,
    owner: str,
    mappings: Sequence[ColumnMapping],
    total_rows: int,
    file_name: str | None = None,
    content: bytes | None = None,
) -> ImportSession:
    """Freeze a mapping set into a new pending session at checkpoint 0.

    When ``content`` is given it is retained server-side so batches can read
    slices without the caller re-sending rows.

    Raises:
        ConflictError: the owner already has a pending, in-progress or paused session
        MappingError: the mapping set is invalid
    """
    if total_rows < 0:
        raise MappingError("total_rows cannot be negative")
    frozen = validate_mapping_set(mappings)

    if get_active_session_for_owner(db, owner) is not None:
        raise _conflict(db, owner)

    session = ImportSession(
        id=str(uuid.uuid4()),
        created_by=owner,
        status=PENDING,
        file_name=file_name,
        file_hash=file_hash(content) if content is not None else None,
        total_rows=total_rows,
        rows_processed=0,
        mapping_config=[m.model_dump() for m in frozen],
        pause_requested=False,
    )
    db.add(session)
    try:
        db.flush()
    except IntegrityError:
        # Lost the race against a concurrent create for the same owner.
        db.rollback()
        raise _conflict(db, owner) from None

    if content is not None:
        session.source_path = str(stage_source(content, session.id, file_name))

    session_id = session.id
    db.commit()
    logger.info(
        f"Created import session {session_id} for {owner}: {total_rows} rows, "
        f"{len(frozen)} mapped columns"
    )
    return session


def _transition(db: Session, session: ImportSession, from_statuses, **values) -> bool:
    """Apply ``values`` only if the row is still in one of ``from_statuses``.

    A batch may commit a new status between our read and our write; the
    conditional update keeps us from overwriting it.
    """
    result = db.execute(
        update(ImportSession)
        .where(ImportSession.id == session.id, ImportSession.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)
    return result.rowcount == 1


def pause_session(db: Session, session: ImportSession) -> ImportSession:
    """Request a pause; the batch processor applies it at the next slice boundary."""
    if session.status == PAUSED or (session.status == IN_PROGRESS and session.pause_requested):
        return session
    if session.status != IN_PROGRESS:
        raise InvalidTransitionError(f"Cannot pause a session that is {session.status}")

    if not _transition(db, session, (IN_PROGRESS,), pause_requested=True):
        return pause_session(db, session)
    logger.info(f"Pause requested for session {session.id} at row {session.rows_processed}")
    return session


def resume_session(
    db: Session,
    session: ImportSession,
    content: bytes | None = None,
) -> ImportSession:
    """Move a paused session back to in_progress, optionally re-supplying the file."""
    if content is not None:
        if session.is_terminal:
            raise InvalidTransitionError(f"Cannot resume a session that is {session.status}")
        _restage(session, content)
        db.commit()

    if session.status == IN_PROGRESS:
        if session.pause_requested:
            _transition(db, session, (IN_PROGRESS,), pause_requested=False)
        return session
    if session.status != PAUSED:
        raise InvalidTransitionError(f"Cannot resume a session that is {session.status}")

    if not _transition(db, session, (PAUSED,), status=IN_PROGRESS, pause_requested=False):
        return resume_session(db, session)
    logger.info(f"Resumed session {session.id} at row {session.rows_processed}")
    return session


def _restage(session: ImportSession, content: bytes) -> None:
    if session.file_hash and file_hash(content) != session.file_hash:
        raise MappingError("Uploaded file does not match the file this session was created from")
    if not session.file_hash:
        session.file_hash = file_hash(content)
        session.source_offset = None
    session.source_path = str(stage_source(content, session.id, session.file_name))


def cancel_session(db: Session, session: ImportSession) -> ImportSession:
    if session.status == CANCELLED:
        return session
    if session.is_terminal:
        raise InvalidTransitionError(f"Cannot cancel a session that is {session.status}")

    if not _transition(
        db,
        session,
        ACTIVE_STATUSES,
        status=CANCELLED,
        pause_requested=False,
        completed_at=utcnow(),
    ):
        return cancel_session(db, session)
    logger.info(f"Cancelled session {session.id} at row {session.rows_processed}")
    return session


def delete_session(db: Session, session: ImportSession) -> None:
    """Explicit cleanup: staged copies, ledger rows and the session go; catalog rows stay."""
    session_id = session.id
    source_path = session.source_path

    db.execute(delete(RowResolution).where(RowResolution.session_id == session_id))
    db.execute(delete(FailedRow).where(FailedRow.session_id == session_id))
    db.delete(session)
    db.commit()

    delete_upload(source_path)
    delete_source_from_redis(session_id)
    clear_progress(session_id)
    logger.info(f"Deleted import session {session_id}")


def find_stalled_sessions(db: Session, older_than: timedelta | None = None) -> list[ImportSession]:
    """In-progress sessions whose last commit is older than the stall threshold."""
    if older_than is None:
        older_than = timedelta(seconds=get_settings().stalled_after_seconds)
    cutoff = utcnow() - older_than
    sessions = db.execute(
        select(ImportSession)
        .where(ImportSession.status == IN_PROGRESS)
        .order_by(ImportSession.created_at)
    ).scalars()
    return [s for s in sessions if is_stalled(s, cutoff)]


def is_stalled(session: ImportSession, cutoff: datetime) -> bool:
    if session.status != IN_PROGRESS:
        return False
    last = as_utc(session.last_checkpoint_at or session.started_at)
    return last is not None and last < cutoff

