"""Celery task that drives an import session one slice per run."""

from __future__ import annotations

import logging

from release_importer.core.exceptions import (
    ImporterError,
    SessionNotFoundError,
    SourceUnavailableError,
    StaleCheckpointError,
    StorageBusyError,
)
from release_importer.db.session import get_fresh_session
from release_importer.services.batch_processor import advance
from release_importer.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

STALE_RETRY_COUNTDOWN = 2  # seconds
BUSY_RETRY_COUNTDOWN = 5  # seconds


@celery_app.task(bind=True, name="release_importer.workers.tasks.drive_import_session")
def drive_import_session(self, session_id: str) -> dict:
    """Advance the session once and re-enqueue while more rows remain.

    Each run is short so a worker restart costs at most one slice, which the
    checkpoint compare-and-set keeps from being applied twice.
    """
    db = get_fresh_session()
    try:
        result = advance(db, session_id)
    except StaleCheckpointError as e:
        # Another driver committed first; pick up from the new checkpoint.
        logger.info(f"Session {session_id}: {e.message}")
        drive_import_session.apply_async(args=[session_id], countdown=STALE_RETRY_COUNTDOWN)
        return {"session_id": session_id, "status": "stale", "requeued": True}
    except StorageBusyError as e:
        logger.warning(f"Session {session_id}: {e.message}; retrying in {BUSY_RETRY_COUNTDOWN}s")
        drive_import_session.apply_async(args=[session_id], countdown=BUSY_RETRY_COUNTDOWN)
        return {"session_id": session_id, "status": "busy", "requeued": True}
    except SourceUnavailableError as e:
        logger.warning(f"Session {session_id} waiting for its source file: {e.message}")
        return {"session_id": session_id, "status": "source_unavailable", "requeued": False}
    except SessionNotFoundError:
        logger.info(f"Session {session_id} no longer exists; driver stopping")
        return {"session_id": session_id, "status": "deleted", "requeued": False}
    except ImporterError as e:
        logger.error(f"Session {session_id} driver stopped: {e.message}")
        return {"session_id": session_id, "status": "failed", "requeued": False}
    finally:
        db.close()

    if result.needs_more:
        drive_import_session.delay(session_id)
    else:
        logger.info(
            f"Session {session_id} driver finished with status {result.status} "
            f"at {result.rows_processed}/{result.total_rows}"
        )
    return {**result.to_dict(), "requeued": result.needs_more}
