"""Persisted checkpoint/state record for one CSV import attempt."""

import uuid

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, Text, text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from release_importer.db.base import Base, JSONType

PENDING = "pending"
IN_PROGRESS = "in_progress"
PAUSED = "paused"
COMPLETED = "completed"
COMPLETED_WITH_ERRORS = "completed_with_errors"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (PENDING, IN_PROGRESS, PAUSED)
TERMINAL_STATUSES = (COMPLETED, COMPLETED_WITH_ERRORS, FAILED, CANCELLED)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

_ACTIVE_SQL = "status IN ('pending', 'in_progress', 'paused')"


class ImportSession(Base):
    __tablename__ = "import_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_by = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=PENDING)
    file_name = Column(String(255))
    file_hash = Column(String(64))
    source_path = Column(Text)
    # Byte offset in source_path where data row `rows_processed` starts.
    source_offset = Column(BigInteger)
    total_rows = Column(Integer, nullable=False, default=0)
    rows_processed = Column(Integer, nullable=False, default=0)
    mapping_config = Column(JSONType, nullable=False)
    pause_requested = Column(Boolean, nullable=False, default=False)
    error = Column(Text)
    artists_created = Column(Integer, nullable=False, default=0)
    releases_created = Column(Integer, nullable=False, default=0)
    tracks_created = Column(Integer, nullable=False, default=0)
    platform_requests_created = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    last_checkpoint_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_import_sessions_owner_status", "created_by", "status"),
        # At most one pending/in_progress/paused session per owner.
        Index(
            "uq_import_sessions_one_active_per_owner",
            "created_by",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
