"""Read-only progress snapshots built from the committed checkpoint."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from release_importer.core.config import get_settings
from release_importer.db.models import ImportSession
from release_importer.db.models.import_session import IN_PROGRESS
from release_importer.services.import_sessions import as_utc, get_session, is_stalled, utcnow
from release_importer.services.progress_tracker import fetch_progress


def percentage(rows_processed: int, total_rows: int) -> int:
    if total_rows <= 0:
        return 0
    return min(100, rows_processed * 100 // total_rows)


def _throughput(session: ImportSession) -> tuple[float, int | None]:
    started = as_utc(session.started_at)
    if started is None or not session.rows_processed:
        return 0.0, None

    if session.completed_at is not None:
        end = as_utc(session.completed_at)
    elif session.status == IN_PROGRESS:
        end = utcnow()
    else:
        end = as_utc(session.last_checkpoint_at) or utcnow()
    elapsed = (end - started).total_seconds()
    if elapsed <= 0:
        return 0.0, None

    rate = session.rows_processed / elapsed
    remaining = None
    if session.status == IN_PROGRESS:
        remaining = int((session.total_rows - session.rows_processed) / rate)
    return round(rate, 1), remaining


def build_snapshot(session: ImportSession) -> dict[str, Any]:
    settings = get_settings()
    rows_per_second, eta = _throughput(session)
    cutoff = utcnow() - timedelta(seconds=settings.stalled_after_seconds)
    telemetry = fetch_progress(session.id)
    return {
        "session_id": session.id,
        "status": session.status,
        "rows_processed": session.rows_processed,
        "total_rows": session.total_rows,
        "percentage": percentage(session.rows_processed, session.total_rows),
        "pause_requested": bool(session.pause_requested),
        "rows_per_second": rows_per_second,
        "estimated_seconds_remaining": eta,
        "stalled": is_stalled(session, cutoff),
        "message": telemetry.get("message"),
        "error": session.error,
    }


def snapshot(db: Session, session_id: str) -> dict[str, Any]:
    """Progress as of the last committed checkpoint; never writes."""
    return build_snapshot(get_session(db, session_id))
