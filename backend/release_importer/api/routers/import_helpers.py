"""Shared helpers for shaping import responses and reading uploads."""

from __future__ import annotations

import json
import logging

from fastapi import HTTPException, UploadFile, status
from pydantic import TypeAdapter, ValidationError

from release_importer.api.schemas.imports import ImportSessionOut
from release_importer.api.schemas.mapping import ColumnMapping
from release_importer.db.models import ImportSession
from release_importer.workers.tasks.drive_import import drive_import_session

logger = logging.getLogger(__name__)

_mapping_list = TypeAdapter(list[ColumnMapping])


def serialize_session(session: ImportSession) -> ImportSessionOut:
    """DB row -> response schema, flagging whether batches can read the source themselves."""
    out = ImportSessionOut.model_validate(session)
    return out.model_copy(update={"has_retained_source": bool(session.source_path)})


async def read_csv_upload(file: UploadFile) -> bytes:
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    if not file.filename.lower().endswith(".csv"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV uploads are supported",
        )
    await file.seek(0)
    content = await file.read()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty",
        )
    return content


def parse_mapping_field(raw: str) -> list[ColumnMapping]:
    """Decode the ``mapping`` form field (a JSON array of column mappings)."""
    try:
        return _mapping_list.validate_python(json.loads(raw))
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"mapping is not valid JSON: {e}",
        ) from e
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from e


def enqueue_drive(session_id: str) -> str:
    """Hand the session to the Celery driver and return the task id."""
    task = drive_import_session.delay(session_id)
    logger.info(f"Enqueued driver task {task.id} for session {session_id}")
    return task.id
