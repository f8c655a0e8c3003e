"""Turn raw CSV headers into advisory column mappings.

Song blocks are recognised by a leading ``Song <n>`` and the rest of the header
is fuzzily matched against the song vocabulary. Submission-level headers are
matched against a fixed set of patterns; everything else is ignored until the
caller assigns it by hand.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from fuzzywuzzy import fuzz, process

from release_importer.api.schemas.mapping import ColumnMapping
from release_importer.core.config import get_settings
from release_importer.core.exceptions import MappingError

logger = logging.getLogger(__name__)

SONG_FIELDS = (
    "name",
    "performer",
    "composer",
    "band",
    "producer",
    "studio",
    "label",
    "genre",
)

# Aliases seen in real spreadsheets for the part after "Song <n>".
SONG_FIELD_ALIASES: dict[str, str] = {
    "name": "name",
    "title": "name",
    "song name": "name",
    "track name": "name",
    "performer": "performer",
    "performer name": "performer",
    "artist": "performer",
    "artist name": "performer",
    "singer": "performer",
    "composer": "composer",
    "composer name": "composer",
    "songwriter": "composer",
    "writer": "composer",
    "band": "band",
    "band name": "band",
    "producer": "producer",
    "producer name": "producer",
    "music producer": "producer",
    "song producer": "producer",
    "studio": "studio",
    "studio name": "studio",
    "label": "label",
    "record label": "label",
    "record label name": "label",
    "genre": "genre",
}

PLATFORM_KEYS = ("youtube", "facebook", "tiktok", "flow", "intl_streaming", "ringtunes")

_PLATFORM_PATTERNS = {
    "youtube": r"youtube",
    "facebook": r"(?:facebook|fb)",
    "tiktok": r"tik_?tok",
    "flow": r"flow",
    "intl_streaming": r"(?:international|intl)_streaming",
    "ringtunes": r"ringtunes",
}

# Checked in order against the normalized header; first match wins.
SUBMISSION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^submission_id$"), "submission_id"),
    (re.compile(r"^submitted_at$"), "submitted_at"),
    (re.compile(r"^(?:album|single)_(?:name|title)$"), "release_title"),
    (re.compile(r"^album_single_name$"), "release_title"),
    (re.compile(r"^release_(?:title|name)$"), "release_title"),
    (re.compile(r"^release_type$"), "release_type"),
    (re.compile(r"^(?:single|album)$"), "release_type"),
    (re.compile(r"^(?:primary_)?artist(?:_name)?$"), "artist_name"),
    (re.compile(r"^legal_name$"), "legal_name"),
    (re.compile(r"^released?_date$"), "release_date"),
    (re.compile(r"^copyright_status$"), "copyright_status"),
    (re.compile(r"^video_type$"), "video_type"),
    (re.compile(r"^payment_remarks$"), "payment_remarks"),
    (re.compile(r"^notes$"), "notes"),
    (re.compile(r"^(?:assigned_)?ar(?:_name)?$"), "assigned_ar"),
    (re.compile(r"^ar_assigned$"), "assigned_ar"),
]
for _key, _pattern in _PLATFORM_PATTERNS.items():
    SUBMISSION_PATTERNS.append((re.compile(rf"^{_pattern}_request_channels?$"), f"{_key}_channel"))
    SUBMISSION_PATTERNS.append((re.compile(rf"^{_pattern}_channels?$"), f"{_key}_channel"))
    SUBMISSION_PATTERNS.append((re.compile(rf"^{_pattern}_request$"), f"{_key}_request"))

SUBMISSION_FIELDS = tuple(dict.fromkeys(field for _, field in SUBMISSION_PATTERNS))

SONG_HEADER = re.compile(r"^\s*song[\s_-]*(\d+)[\s_-]*(.*)$", re.IGNORECASE)


def normalize_column_name(name: str) -> str:
    """Lowercase, collapse separators to ``_`` and drop other punctuation."""
    value = name.strip().lower().replace("&", "")
    value = re.sub(r"[\s_\-/]+", "_", value)
    value = re.sub(r"[^a-z0-9_]", "", value)
    return value.strip("_")


def _clean_song_remainder(remainder: str) -> str:
    value = remainder.lower()
    value = re.sub(r"\(\s*archived\s*\)|\barchived\b", " ", value)
    # "Song 3 Song Producer" repeats the word song.
    value = re.sub(r"^\s*song\b", " ", value)
    value = re.sub(r"[^a-z0-9]+", " ", value)
    return " ".join(value.split())


def match_song_field(remainder: str, threshold: int | None = None) -> str | None:
    """Return the song field that best matches a header remainder, if any."""
    cleaned = _clean_song_remainder(remainder)
    if not cleaned:
        return None
    if cleaned in SONG_FIELD_ALIASES:
        return SONG_FIELD_ALIASES[cleaned]
    cutoff = threshold if threshold is not None else get_settings().song_field_match_threshold
    best = process.extractOne(
        cleaned,
        list(SONG_FIELD_ALIASES),
        scorer=fuzz.ratio,
        score_cutoff=cutoff,
    )
    if best is None:
        return None
    return SONG_FIELD_ALIASES[best[0]]


def match_submission_field(header: str) -> str | None:
    normalized = normalize_column_name(header)
    for pattern, field in SUBMISSION_PATTERNS:
        if pattern.match(normalized):
            return field
    return None


def resolve_header(header: str) -> ColumnMapping:
    """Produce the default mapping for one header."""
    song = SONG_HEADER.match(header)
    if song:
        return ColumnMapping(
            csv_column=header,
            field_type="song",
            song_index=int(song.group(1)),
            target_field=match_song_field(song.group(2)),
        )

    field = match_submission_field(header)
    if field:
        return ColumnMapping(csv_column=header, field_type="submission", target_field=field)
    return ColumnMapping(csv_column=header, field_type="ignore")


def preview_mapping(
    header_row: Sequence[str] | None,
    sample_rows: Iterable[dict[str, str]] | None = None,
) -> list[ColumnMapping]:
    """Build advisory mappings for a header row.

    Sample rows are accepted for parity with the preview endpoint; the heuristic
    only looks at header text. A missing or blank header row yields ``[]``.
    """
    if not header_row:
        return []
    headers = [h for h in header_row if isinstance(h, str) and h.strip()]
    if not headers:
        return []

    mappings: list[ColumnMapping] = []
    taken_submission: set[str] = set()
    taken_song: set[tuple[int, str]] = set()
    for header in headers:
        mapping = resolve_header(header)
        # Later duplicates are demoted so the advisory set stays valid.
        if mapping.field_type == "submission":
            if mapping.target_field in taken_submission:
                mapping = ColumnMapping(csv_column=header, field_type="ignore")
            else:
                taken_submission.add(mapping.target_field)
        elif mapping.field_type == "song" and mapping.target_field:
            key = (mapping.song_index, mapping.target_field)
            if key in taken_song:
                mapping = mapping.model_copy(update={"target_field": None})
            else:
                taken_song.add(key)
        mappings.append(mapping)

    song_count = sum(1 for m in mappings if m.field_type == "song")
    logger.debug(
        f"Resolved {len(mappings)} headers: {len(taken_submission)} submission, {song_count} song"
    )
    return mappings


def validate_mapping_set(mappings: Sequence[ColumnMapping]) -> list[ColumnMapping]:
    """Enforce the invariants a mapping set must satisfy before it is frozen."""
    if not mappings:
        raise MappingError("Mapping set is empty")

    submission_fields: set[str] = set()
    song_keys: set[tuple[int, str]] = set()
    columns: set[str] = set()
    for mapping in mappings:
        if mapping.csv_column in columns:
            raise MappingError(f"Column '{mapping.csv_column}' is mapped more than once")
        columns.add(mapping.csv_column)

        if mapping.field_type == "ignore":
            continue
        if not mapping.target_field:
            raise MappingError(f"Column '{mapping.csv_column}' needs a target field")

        if mapping.field_type == "song":
            if mapping.song_index is None:
                raise MappingError(f"Song column '{mapping.csv_column}' needs a song index")
            if mapping.target_field not in SONG_FIELDS:
                raise MappingError(
                    f"Unknown song field '{mapping.target_field}' for '{mapping.csv_column}'"
                )
            key = (mapping.song_index, mapping.target_field)
            if key in song_keys:
                raise MappingError(
                    f"Song {mapping.song_index} field '{mapping.target_field}' is mapped twice"
                )
            song_keys.add(key)
        else:
            if mapping.target_field in submission_fields:
                raise MappingError(f"Field '{mapping.target_field}' is mapped twice")
            submission_fields.add(mapping.target_field)

    if "artist_name" not in submission_fields or "release_title" not in submission_fields:
        logger.warning("Mapping set lacks artist_name or release_title; every row will fail")
    return list(mappings)


def has_multiple_songs(mappings: Iterable[ColumnMapping]) -> bool:
    indexes = {m.song_index for m in mappings if m.field_type == "song"}
    return len(indexes) > 1
