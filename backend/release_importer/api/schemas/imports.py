"""Request and response payloads for the imports API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from release_importer.api.schemas.mapping import ColumnMapping


class ImportSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_by: str
    status: str = Field(
        ...,
        description="pending|in_progress|paused|completed|completed_with_errors|failed|cancelled",
    )
    file_name: str | None = None
    total_rows: int
    rows_processed: int
    mapping_config: list[ColumnMapping]
    pause_requested: bool = False
    has_retained_source: bool = False
    error: str | None = None
    artists_created: int = 0
    releases_created: int = 0
    tracks_created: int = 0
    platform_requests_created: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    last_checkpoint_at: datetime | None = None
    completed_at: datetime | None = None


class BatchRequest(BaseModel):
    expected_checkpoint: int | None = Field(
        None, ge=0, description="Checkpoint the caller believes is current"
    )
    rows: list[dict[str, Any]] | None = Field(
        None, description="Rows for the slice starting at expected_checkpoint"
    )

    @model_validator(mode="after")
    def rows_need_checkpoint(self) -> "BatchRequest":
        if self.rows is not None and self.expected_checkpoint is None:
            raise ValueError("expected_checkpoint is required when rows are supplied")
        return self


class BatchResultOut(BaseModel):
    session_id: str
    rows_processed: int
    total_rows: int
    completed: bool
    needs_more: bool
    paused: bool
    status: str
    slice_size: int = 0
    failed_in_slice: int = 0


class ProgressSnapshot(BaseModel):
    session_id: str
    status: str
    rows_processed: int
    total_rows: int
    percentage: int = Field(..., ge=0, le=100)
    pause_requested: bool = False
    rows_per_second: float = 0.0
    estimated_seconds_remaining: int | None = None
    stalled: bool = False
    message: str | None = None
    error: str | None = None


class SampleError(BaseModel):
    row_number: int
    error_message: str
    error_category: str


class FailureStats(BaseModel):
    session_id: str
    status: str
    rows_processed: int
    total_rows: int
    total_failed: int
    error_counts_by_category: dict[str, int]
    sample_errors: list[SampleError]
    resolved_count: int
    success_count: int
    success_rate: str = Field(..., description="One-decimal percentage, e.g. 99.9")


class FailedRowOut(BaseModel):
    id: int
    row_number: int
    raw_row_data: dict[str, Any]
    error_message: str
    error_category: str
    attempt: int
    created_at: str | None = None
    resolved: bool = False


class FailedRowPage(BaseModel):
    items: list[FailedRowOut]
    total: int
    limit: int
    offset: int


class RetryRequest(BaseModel):
    row_numbers: list[int] = Field(..., min_length=1)


class RetryResult(BaseModel):
    session_id: str
    status: str
    resolved: list[int]
    failed: list[SampleError]
    skipped: list[int]


class DriveAccepted(BaseModel):
    session_id: str
    task_id: str
