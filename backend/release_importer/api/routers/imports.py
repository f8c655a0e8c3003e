"""Endpoints for column-mapped, resumable CSV imports."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from release_importer.api.dependencies.db import get_owned_import_session, get_session
from release_importer.api.dependencies.owner import get_owner
from release_importer.api.routers.import_helpers import (
    enqueue_drive,
    parse_mapping_field,
    read_csv_upload,
    serialize_session,
)
from release_importer.api.schemas.imports import (
    BatchRequest,
    BatchResultOut,
    DriveAccepted,
    FailedRowPage,
    FailureStats,
    ImportSessionOut,
    ProgressSnapshot,
    RetryRequest,
    RetryResult,
)
from release_importer.api.schemas.mapping import MappingPreview
from release_importer.core.config import get_settings
from release_importer.db.models import ImportSession
from release_importer.db.models.import_session import PAUSED, TERMINAL_STATUSES
from release_importer.services import (
    batch_processor,
    failure_ledger,
    import_sessions,
    progress_reporter,
)
from release_importer.services.column_mapping import has_multiple_songs, preview_mapping
from release_importer.services.csv_source import parse_upload
from release_importer.utils.csv_values import truncate

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_POLL_SECONDS = 2.0
STREAM_IDLE_LIMIT = 150  # polls without a checkpoint change


@router.post(
    "/preview",
    summary="Suggest column mappings for a CSV file",
    response_model=MappingPreview,
)
async def preview_import(
    file: UploadFile = File(...),
    owner: str = Depends(get_owner),
) -> MappingPreview:
    """Parse the upload and return advisory mappings plus the first rows."""
    settings = get_settings()
    content = await read_csv_upload(file)
    parsed = parse_upload(content)

    sample = parsed.rows[: settings.preview_row_limit]
    mappings = preview_mapping(parsed.headers, sample)
    preview_rows = [
        {k: truncate(v, settings.preview_cell_max_length) for k, v in row.items()}
        for row in sample
    ]
    return MappingPreview(
        headers=[h for h in parsed.headers if h],
        preview_rows=preview_rows,
        total_rows=parsed.total_rows,
        mappings=mappings,
        has_multiple_songs=has_multiple_songs(mappings),
    )


@router.post(
    "/",
    summary="Create an import session",
    status_code=status.HTTP_201_CREATED,
    response_model=ImportSessionOut,
)
async def create_import(
    file: UploadFile = File(...),
    mapping: str = Form(..., description="JSON array of column mappings"),
    auto_drive: bool = Form(False),
    owner: str = Depends(get_owner),
    db: Session = Depends(get_session),
) -> ImportSessionOut:
    """Freeze the mapping into a pending session and retain the file server-side."""
    mappings = parse_mapping_field(mapping)
    content = await read_csv_upload(file)
    parsed = parse_upload(content)

    session = import_sessions.create_session(
        db,
        owner=owner,
        mappings=mappings,
        total_rows=parsed.total_rows,
        file_name=file.filename,
        content=content,
    )
    if auto_drive:
        enqueue_drive(session.id)
    return serialize_session(session)


@router.get(
    "/active",
    summary="Fetch the caller's pending, in-progress or paused session",
    response_model=ImportSessionOut | None,
)
async def get_active_import(
    owner: str = Depends(get_owner),
    db: Session = Depends(get_session),
) -> ImportSessionOut | None:
    session = import_sessions.get_active_session_for_owner(db, owner)
    return serialize_session(session) if session else None


@router.get(
    "/{session_id}",
    summary="Fetch session metadata",
    response_model=ImportSessionOut,
)
async def get_import(
    session: ImportSession = Depends(get_owned_import_session),
) -> ImportSessionOut:
    return serialize_session(session)


@router.post(
    "/{session_id}/batches",
    summary="Process the next slice of rows",
    response_model=BatchResultOut,
)
async def advance_import(
    payload: BatchRequest | None = Body(None),
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> BatchResultOut:
    """Advance the checkpoint by at most one batch.

    Send ``expected_checkpoint`` to make retries safe: a request that arrives
    after the checkpoint has moved gets 409 instead of re-applying rows.
    """
    payload = payload or BatchRequest()
    result = batch_processor.advance(
        db,
        session.id,
        source_rows=payload.rows,
        expected_checkpoint=payload.expected_checkpoint,
    )
    return BatchResultOut(**result.to_dict())


@router.post(
    "/{session_id}/pause",
    summary="Request a pause at the next batch boundary",
    response_model=ImportSessionOut,
)
async def pause_import(
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> ImportSessionOut:
    return serialize_session(import_sessions.pause_session(db, session))


@router.post(
    "/{session_id}/resume",
    summary="Resume a paused session, optionally re-supplying the file",
    response_model=ImportSessionOut,
)
async def resume_import(
    file: UploadFile | None = File(None),
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> ImportSessionOut:
    content = await read_csv_upload(file) if file is not None else None
    return serialize_session(import_sessions.resume_session(db, session, content))


@router.post(
    "/{session_id}/cancel",
    summary="Cancel a session",
    response_model=ImportSessionOut,
)
async def cancel_import(
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> ImportSessionOut:
    return serialize_session(import_sessions.cancel_session(db, session))


@router.post(
    "/{session_id}/drive",
    summary="Let a background worker drive the session to completion",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=DriveAccepted,
)
async def drive_import(
    session: ImportSession = Depends(get_owned_import_session),
) -> DriveAccepted:
    if session.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session is already {session.status}",
        )
    return DriveAccepted(session_id=session.id, task_id=enqueue_drive(session.id))


@router.get(
    "/{session_id}/progress",
    summary="Progress of the last committed checkpoint",
    response_model=ProgressSnapshot,
)
async def get_import_progress(
    session: ImportSession = Depends(get_owned_import_session),
) -> ProgressSnapshot:
    return ProgressSnapshot(**progress_reporter.build_snapshot(session))


@router.get(
    "/{session_id}/stats",
    summary="Failure statistics and success rate",
    response_model=FailureStats,
)
async def get_import_stats(
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> FailureStats:
    return FailureStats(**failure_ledger.stats(db, session))


@router.get(
    "/{session_id}/failed-rows",
    summary="Page through failed rows",
    response_model=FailedRowPage,
)
async def list_failed_rows(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    include_resolved: bool = Query(False, description="Include rows fixed by a retry"),
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> FailedRowPage:
    return FailedRowPage(
        **failure_ledger.list_failed(db, session.id, limit, offset, include_resolved)
    )


@router.post(
    "/{session_id}/failed-rows/retry",
    summary="Re-run failed rows with the session's mapping",
    response_model=RetryResult,
)
async def retry_failed_rows(
    payload: RetryRequest,
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> RetryResult:
    return RetryResult(**failure_ledger.retry_failed_rows(db, session, payload.row_numbers))


@router.get(
    "/{session_id}/stream",
    summary="Server-Sent Events stream of progress snapshots",
)
async def stream_import_progress(
    session: ImportSession = Depends(get_owned_import_session),
) -> StreamingResponse:
    """Stream progress snapshots until the session is paused or finished.

    Example client usage:
    ```javascript
    const source = new EventSource('/api/imports/{session_id}/stream');
    source.onmessage = (e) => console.log(JSON.parse(e.data).percentage);
    ```
    """
    session_id = session.id

    async def event_generator() -> AsyncGenerator[str, None]:
        # The request session closes when the handler returns; use our own.
        from release_importer.db.session import SessionLocal

        db = SessionLocal()
        last_checkpoint = -1
        idle_polls = 0
        try:
            while True:
                db.expire_all()
                current = db.get(ImportSession, session_id)
                if current is None:
                    yield "event: error\ndata: {\"error\": \"Session not found\"}\n\n"
                    break

                snapshot = progress_reporter.build_snapshot(current)
                yield f"data: {json.dumps(snapshot)}\n\n"

                if current.status in TERMINAL_STATUSES or current.status == PAUSED:
                    yield "event: close\ndata: {}\n\n"
                    break

                if current.rows_processed != last_checkpoint:
                    last_checkpoint = current.rows_processed
                    idle_polls = 0
                else:
                    idle_polls += 1
                if idle_polls > STREAM_IDLE_LIMIT:
                    yield "event: timeout\ndata: {}\n\n"
                    break

                db.rollback()
                await asyncio.sleep(STREAM_POLL_SECONDS)
        finally:
            db.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.delete(
    "/{session_id}",
    summary="Delete a session, its failure ledger and staged files",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_import(
    session: ImportSession = Depends(get_owned_import_session),
    db: Session = Depends(get_session),
) -> Response:
    import_sessions.delete_session(db, session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
