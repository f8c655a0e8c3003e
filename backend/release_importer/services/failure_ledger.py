"""Append-only ledger of rows that failed translation, with stats and operator retries."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from release_importer.core.config import get_settings
from release_importer.core.exceptions import InvalidTransitionError, RowError
from release_importer.db.models import FailedRow, ImportSession, RowResolution
from release_importer.db.models.import_session import (
    COMPLETED,
    COMPLETED_WITH_ERRORS,
    IN_PROGRESS,
    PENDING,
)
from release_importer.services.translator import RowTranslator

logger = logging.getLogger(__name__)


def record_failure(
    db: Session,
    session_id: str,
    row_number: int,
    raw_row: Mapping[str, Any],
    error: RowError,
    attempt: int = 1,
) -> FailedRow:
    """Add a FailedRow to the current transaction; the caller commits."""
    failed = FailedRow(
        session_id=session_id,
        row_number=row_number,
        raw_row_data=dict(raw_row),
        error_message=error.message,
        error_category=error.category,
        attempt=attempt,
    )
    db.add(failed)
    logger.warning(
        f"Session {session_id} row {row_number} failed ({error.category}): {error.message}"
    )
    return failed


def _resolved_rows(session_id: str):
    return select(RowResolution.row_number).where(RowResolution.session_id == session_id)


def _current_failures_stmt(session_id: str):
    """Latest attempt of each row that has not been resolved by a retry."""
    latest = (
        select(FailedRow.row_number, func.max(FailedRow.attempt).label("attempt"))
        .where(FailedRow.session_id == session_id)
        .group_by(FailedRow.row_number)
        .subquery()
    )
    return (
        select(FailedRow)
        .join(
            latest,
            and_(
                FailedRow.row_number == latest.c.row_number,
                FailedRow.attempt == latest.c.attempt,
            ),
        )
        .where(
            FailedRow.session_id == session_id,
            FailedRow.row_number.not_in(_resolved_rows(session_id)),
        )
    )


def count_unresolved(db: Session, session_id: str) -> int:
    return db.execute(
        select(func.count(func.distinct(FailedRow.row_number))).where(
            FailedRow.session_id == session_id,
            FailedRow.row_number.not_in(_resolved_rows(session_id)),
        )
    ).scalar_one()


def serialize_failed_row(failed: FailedRow, resolved: bool = False) -> dict[str, Any]:
    return {
        "id": failed.id,
        "row_number": failed.row_number,
        "raw_row_data": failed.raw_row_data,
        "error_message": failed.error_message,
        "error_category": failed.error_category,
        "attempt": failed.attempt,
        "created_at": failed.created_at.isoformat() if failed.created_at else None,
        "resolved": resolved,
    }


def list_failed(
    db: Session,
    session_id: str,
    limit: int = 50,
    offset: int = 0,
    include_resolved: bool = False,
) -> dict[str, Any]:
    """Page through failures ordered by row number.

    By default only rows that are still failing are listed, one entry each.
    ``include_resolved`` returns every attempt for audit.
    """
    if include_resolved:
        stmt = select(FailedRow).where(FailedRow.session_id == session_id)
        resolved = set(db.execute(_resolved_rows(session_id)).scalars())
    else:
        stmt = _current_failures_stmt(session_id)
        resolved = set()

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = db.execute(
        stmt.order_by(FailedRow.row_number, FailedRow.attempt).limit(limit).offset(offset)
    ).scalars()
    return {
        "items": [serialize_failed_row(r, r.row_number in resolved) for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def format_success_rate(success_count: int, rows_processed: int) -> str:
    """One-decimal percentage, rounded down so a run with failures never shows 100.0."""
    if rows_processed <= 0:
        return "0.0"
    tenths = max(success_count, 0) * 1000 // rows_processed
    return f"{tenths // 10}.{tenths % 10}"


def stats(db: Session, session: ImportSession, sample_size: int | None = None) -> dict[str, Any]:
    if sample_size is None:
        sample_size = get_settings().failure_sample_size

    current = list(
        db.execute(_current_failures_stmt(session.id).order_by(FailedRow.row_number)).scalars()
    )
    resolved_count = db.execute(
        select(func.count()).select_from(RowResolution).where(RowResolution.session_id == session.id)
    ).scalar_one()

    total_failed = len(current)
    rows_processed = session.rows_processed or 0
    success_count = max(rows_processed - total_failed, 0)
    return {
        "session_id": session.id,
        "status": session.status,
        "rows_processed": rows_processed,
        "total_rows": session.total_rows,
        "total_failed": total_failed,
        "error_counts_by_category": dict(Counter(f.error_category for f in current)),
        "sample_errors": [
            {
                "row_number": f.row_number,
                "error_message": f.error_message,
                "error_category": f.error_category,
            }
            for f in current[:sample_size]
        ],
        "resolved_count": resolved_count,
        "success_count": success_count,
        "success_rate": format_success_rate(success_count, rows_processed),
    }


def retry_failed_rows(
    db: Session, session: ImportSession, row_numbers: Iterable[int]
) -> dict[str, Any]:
    """Re-run the translator on stored rows with the session's original mapping.

    Each outcome is recorded: success adds a resolution, failure appends a new
    attempt. Rows that are not currently failing are reported as skipped.
    """
    if session.status in (PENDING, IN_PROGRESS):
        raise InvalidTransitionError(
            f"Cannot retry failed rows while the session is {session.status}"
        )

    wanted = list(dict.fromkeys(row_numbers))
    current = {
        f.row_number: f
        for f in db.execute(
            _current_failures_stmt(session.id).where(FailedRow.row_number.in_(wanted))
        ).scalars()
    }

    translator = RowTranslator(db, session.mapping_config)
    resolved: list[int] = []
    failed: list[dict[str, Any]] = []
    skipped: list[int] = []
    totals = Counter()
    try:
        for row_number in wanted:
            previous = current.get(row_number)
            if previous is None:
                skipped.append(row_number)
                continue
            try:
                result = translator.translate(previous.raw_row_data, row_number)
            except RowError as e:
                record_failure(
                    db, session.id, row_number, previous.raw_row_data, e, attempt=previous.attempt + 1
                )
                failed.append(
                    {"row_number": row_number, "error_message": e.message, "error_category": e.category}
                )
                continue
            db.add(RowResolution(session_id=session.id, row_number=row_number))
            totals["artists_created"] += result.artists_created
            totals["releases_created"] += result.releases_created
            totals["tracks_created"] += result.tracks_created
            totals["platform_requests_created"] += result.platform_requests_created
            resolved.append(row_number)

        db.flush()
        if totals:
            db.execute(
                update(ImportSession)
                .where(ImportSession.id == session.id)
                .values({name: getattr(ImportSession, name) + n for name, n in totals.items()})
                .execution_options(synchronize_session=False)
            )
        if count_unresolved(db, session.id) == 0:
            db.execute(
                update(ImportSession)
                .where(ImportSession.id == session.id, ImportSession.status == COMPLETED_WITH_ERRORS)
                .values(status=COMPLETED)
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(session)
    logger.info(
        f"Retried {len(wanted)} rows for session {session.id}: {len(resolved)} resolved, "
        f"{len(failed)} still failing, {len(skipped)} skipped"
    )
    return {
        "session_id": session.id,
        "status": session.status,
        "resolved": resolved,
        "failed": failed,
        "skipped": skipped,
    }
