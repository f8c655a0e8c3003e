"""Shared helpers for publishing import telemetry to Redis/SSE."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from release_importer.utils.redis_client import get_text_client

logger = logging.getLogger(__name__)

redis_client = get_text_client()
PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=24)


def _key(session_id: str) -> str:
    return f"{PROGRESS_PREFIX}{session_id}"


def publish_progress(
    session_id: str,
    progress: float,
    message: str | None = None,
    *,
    status: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Persist the latest batch snapshot so pollers and the stream can pick it up."""
    payload = {
        "session_id": session_id,
        "progress": max(0.0, min(progress, 1.0)),
        "message": message,
        "status": status,
        "meta": meta or {},
    }
    try:
        redis_client.set(
            _key(session_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError as e:
        # Redis availability should not break ingestion.
        logger.warning(f"Could not publish progress for session {session_id}: {e}")


def fetch_progress(session_id: str) -> dict[str, Any]:
    """Return latest telemetry, or {} when Redis has nothing usable."""
    try:
        raw = redis_client.get(_key(session_id))
    except RedisError as e:
        logger.warning(f"Could not fetch progress for session {session_id}: {e}")
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def clear_progress(session_id: str) -> None:
    try:
        redis_client.delete(_key(session_id))
    except RedisError as e:
        logger.warning(f"Could not clear progress for session {session_id}: {e}")
