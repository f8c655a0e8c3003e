"""Column mapping payloads shared by the preview, session and translator layers."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator

FieldType = Literal["submission", "song", "ignore"]


class ColumnMapping(BaseModel):
    csv_column: str = Field(..., description="Source header text")
    field_type: FieldType = "ignore"
    target_field: str | None = Field(
        None, description="Destination field; required unless field_type is ignore"
    )
    song_index: int | None = Field(
        None, ge=1, description="Song block number; required when field_type is song"
    )

    @model_validator(mode="after")
    def drop_song_index_outside_songs(self) -> "ColumnMapping":
        if self.field_type != "song":
            self.song_index = None
        return self


class MappingPreview(BaseModel):
    headers: list[str]
    preview_rows: list[dict[str, str]]
    total_rows: int
    mappings: list[ColumnMapping]
    has_multiple_songs: bool
