"""Local disk staging for uploaded import sources."""

from __future__ import annotations

import hashlib
import logging
import uuid
from pathlib import Path

from release_importer.core.config import get_settings

logger = logging.getLogger(__name__)


def uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def file_hash(content: bytes) -> str:
    """sha256 of the raw upload, used to recognise the same file on resume."""
    return hashlib.sha256(content).hexdigest()


def save_upload(content: bytes, original_name: str | None = None, stem: str | None = None) -> Path:
    """Persist upload bytes to the uploads directory and return the absolute path."""
    suffix = Path(original_name or "upload.csv").suffix or ".csv"
    target_path = (uploads_dir() / f"{stem or uuid.uuid4()}{suffix}").resolve()
    target_path.write_bytes(content)
    return target_path


def delete_upload(uri: str | Path | None) -> None:
    """Remove a staged file; missing files are fine."""
    if not uri:
        return
    path = Path(uri).resolve()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        # Left for the retention sweep.
        logger.warning(f"Could not delete staged file {path}: {e}")
