"""Redis mirror of import sources so workers on other instances can read them."""

from __future__ import annotations

import logging
from pathlib import Path

from redis.exceptions import RedisError

from release_importer.core.config import get_settings
from release_importer.storage.uploads import save_upload
from release_importer.utils.redis_client import get_binary_client

logger = logging.getLogger(__name__)

FILE_STORAGE_PREFIX = "imports:source:"
FILE_STORAGE_TTL = 86400  # seconds


def _key(session_id: str) -> str:
    return f"{FILE_STORAGE_PREFIX}{session_id}"


def store_source_in_redis(content: bytes, session_id: str) -> bool:
    """Mirror the source bytes; returns False when skipped or Redis is down."""
    max_size = get_settings().source_redis_max_bytes
    if len(content) > max_size:
        logger.warning(
            f"Source for session {session_id} too large for Redis ({len(content)} bytes)"
        )
        return False
    try:
        get_binary_client().set(_key(session_id), content, ex=FILE_STORAGE_TTL)
    except RedisError as e:
        logger.warning(f"Failed to mirror source for session {session_id} in Redis: {e}")
        return False
    logger.info(f"Mirrored source for session {session_id} in Redis ({len(content)} bytes)")
    return True


def get_source_from_redis(session_id: str) -> bytes | None:
    try:
        return get_binary_client().get(_key(session_id))
    except RedisError as e:
        logger.warning(f"Failed to read source for session {session_id} from Redis: {e}")
        return None


def delete_source_from_redis(session_id: str) -> None:
    try:
        get_binary_client().delete(_key(session_id))
    except RedisError as e:
        logger.warning(f"Failed to delete source for session {session_id} from Redis: {e}")


def stage_source(content: bytes, session_id: str, original_name: str | None = None) -> Path:
    """Stage the source on local disk and mirror it to Redis."""
    path = save_upload(content, original_name, stem=session_id)
    store_source_in_redis(content, session_id)
    return path


def ensure_local_source(source_path: str | None, session_id: str) -> Path | None:
    """Return a readable local copy, re-materialising it from Redis if needed."""
    if source_path:
        path = Path(source_path)
        if path.exists():
            return path
        logger.warning(f"Staged source {path} missing, trying Redis for session {session_id}")
    content = get_source_from_redis(session_id)
    if not content:
        return None
    name = Path(source_path).name if source_path else None
    path = save_upload(content, name, stem=session_id)
    logger.info(f"Restored source for session {session_id} from Redis to {path}")
    return path
