"""Append-only failure ledger tables."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from release_importer.db.base import Base, JSONType


class FailedRow(Base):
    __tablename__ = "import_failed_rows"

    id = Column(Integer, primary_key=True)
    session_id = Column(
        String(36),
        ForeignKey("import_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number = Column(Integer, nullable=False)
    raw_row_data = Column(JSONType, nullable=False)
    error_message = Column(Text, nullable=False)
    error_category = Column(String(32), nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_failed_rows_session_row", "session_id", "row_number"),)


class RowResolution(Base):
    """Marks a failed row as fixed by a later retry; the failures stay for audit."""

    __tablename__ = "import_row_resolutions"

    id = Column(Integer, primary_key=True)
    session_id = Column(
        String(36),
        ForeignKey("import_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number = Column(Integer, nullable=False)
    resolved_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("session_id", "row_number"),)
