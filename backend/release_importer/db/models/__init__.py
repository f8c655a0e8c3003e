"""Database models package."""
from release_importer.db.models.catalog import (
    Artist,
    PlatformRequest,
    Release,
    ReleaseArtist,
    Track,
)
from release_importer.db.models.failed_row import FailedRow, RowResolution
from release_importer.db.models.import_session import ImportSession

__all__ = [
    "Artist",
    "FailedRow",
    "ImportSession",
    "PlatformRequest",
    "Release",
    "ReleaseArtist",
    "RowResolution",
    "Track",
]
