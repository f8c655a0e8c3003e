"""Translate one mapped CSV row into artist, release, track and platform-request rows."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from release_importer.api.schemas.mapping import ColumnMapping
from release_importer.core.config import Settings, get_settings
from release_importer.core.exceptions import (
    DuplicateRowError,
    MappingError,
    RowError,
    RowValidationError,
)
from release_importer.db.errors import classify_storage_error
from release_importer.db.models import (
    Artist,
    PlatformRequest,
    Release,
    ReleaseArtist,
    Track,
)
from release_importer.db.models.catalog import REQUEST_PENDING
from release_importer.services.column_mapping import (
    PLATFORM_KEYS,
    SUBMISSION_FIELDS,
    validate_mapping_set,
)
from release_importer.utils.csv_values import clean, is_truthy, split_names

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (OperationalError, DisconnectionError, InterfaceError)

# Platform keys as they appear in mappings -> catalog platform names.
PLATFORM_NAMES = {key: key for key in PLATFORM_KEYS}
PLATFORM_NAMES["intl_streaming"] = "international_streaming"

RELEASE_COLUMNS = ("copyright_status", "video_type", "notes", "payment_remarks")
META_FIELDS = ("submission_id", "submitted_at", "assigned_ar")
_HANDLED_FIELDS = (
    {"artist_name", "legal_name", "release_title", "release_type", "release_date"}
    | set(RELEASE_COLUMNS)
    | set(META_FIELDS)
    | {f"{key}_request" for key in PLATFORM_KEYS}
    | {f"{key}_channel" for key in PLATFORM_KEYS}
)

_EP_WORD = re.compile(r"\bep\b")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d", "%B %d, %Y", "%b %d, %Y")


def parse_mapping_config(raw: Sequence[Mapping[str, Any] | ColumnMapping]) -> list[ColumnMapping]:
    """Load a frozen mapping set from its JSON form and re-check it."""
    try:
        mappings = [
            m if isinstance(m, ColumnMapping) else ColumnMapping.model_validate(m) for m in raw
        ]
    except (TypeError, ValueError) as e:
        raise MappingError(f"Stored mapping is unreadable: {e}") from e
    return validate_mapping_set(mappings)


def resolve_release_type(value: str, settings: Settings) -> str:
    text = value.lower()
    if not text:
        return settings.default_release_type
    if "album" in text:
        return "album"
    if _EP_WORD.search(text):
        return "ep"
    if "single" in text:
        return "single"
    if settings.strict_release_type:
        raise RowValidationError(f"Unrecognized release type '{value}'")
    return settings.default_release_type


def parse_date(value: str) -> date | None:
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def normalize_copyright_status(value: str) -> str | None:
    text = value.lower()
    if "original" in text:
        return "original"
    if "cover" in text:
        return "cover"
    if "international" in text:
        return "international"
    return None


def normalize_video_type(value: str) -> str | None:
    text = value.lower()
    if not text:
        return None
    if "music" in text or "mv" in text:
        return "music_video"
    if "lyric" in text:
        return "lyrics_video"
    return "none"


@dataclass
class RowResult:
    """Entities written for one row plus the counters folded into the session."""

    row_number: int
    artist: Artist
    release: Release
    featured_artists: list[Artist] = field(default_factory=list)
    tracks: list[Track] = field(default_factory=list)
    platform_requests: list[PlatformRequest] = field(default_factory=list)
    artists_created: int = 0

    @property
    def releases_created(self) -> int:
        return 1

    @property
    def tracks_created(self) -> int:
        return len(self.tracks)

    @property
    def platform_requests_created(self) -> int:
        return len(self.platform_requests)


class RowTranslator:
    """Writes rows for one mapping set; keep one instance per slice.

    The artist cache only lives for the instance so that names resolved earlier
    in a slice are not queried again.
    """

    def __init__(
        self,
        db: Session,
        mappings: Sequence[Mapping[str, Any] | ColumnMapping],
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.mappings = parse_mapping_config(mappings)
        self.submission_mappings = [m for m in self.mappings if m.field_type == "submission"]
        grouped: dict[int, list[ColumnMapping]] = defaultdict(list)
        for mapping in self.mappings:
            if mapping.field_type == "song":
                grouped[mapping.song_index].append(mapping)
        self.song_groups = sorted(grouped.items())
        self._artists: dict[str, Artist] = {}

    def translate(self, row: Mapping[str, Any], row_number: int) -> RowResult:
        """Write one row atomically.

        Raises:
            RowError: the row failed; nothing it wrote is kept
            StorageBusyError: lock contention; retry the whole slice later
            StorageUnavailableError: the database connection was lost
        """
        created: dict[str, Artist] = {}
        try:
            with self.db.begin_nested():
                result = self._write(row, row_number, created)
                self.db.flush()
        except RowError:
            raise
        except IntegrityError as e:
            raise DuplicateRowError(f"Row {row_number} conflicts with existing data: {e.orig}") from e
        except STORAGE_ERRORS as e:
            raise classify_storage_error(e) from e
        except SQLAlchemyError as e:
            raise RowError(f"Storage error on row {row_number}: {e}", category="storage") from e
        except Exception as e:
            raise RowError(f"Unexpected error on row {row_number}: {e}", category="unknown") from e

        self._artists.update(created)
        return result

    def submission_bag(self, row: Mapping[str, Any]) -> dict[str, str]:
        return {m.target_field: clean(row.get(m.csv_column)) for m in self.submission_mappings}

    def _write(
        self, row: Mapping[str, Any], row_number: int, created: dict[str, Artist]
    ) -> RowResult:
        bag = self.submission_bag(row)

        names = split_names(bag.get("artist_name"))
        if not names:
            raise RowValidationError(f"Row {row_number} has no artist name")
        title = bag.get("release_title", "")
        if not title:
            raise RowValidationError(f"Row {row_number} has no release title")

        artists_created = 0
        resolved: list[Artist] = []
        for name in names:
            artist, is_new = self._resolve_artist(name, created)
            artists_created += int(is_new)
            resolved.append(artist)
        primary, featured = resolved[0], resolved[1:]

        legal_name = bag.get("legal_name")
        if legal_name:
            primary.legal_name = legal_name

        release = Release(
            title=title,
            type=resolve_release_type(bag.get("release_type", ""), self.settings),
            artist=primary,
            submission_id=bag.get("submission_id") or None,
            release_date=parse_date(bag.get("release_date", "")),
            copyright_status=normalize_copyright_status(bag.get("copyright_status", "")),
            video_type=normalize_video_type(bag.get("video_type", "")),
            notes=bag.get("notes") or None,
            payment_remarks=bag.get("payment_remarks") or None,
            meta=self._release_meta(bag),
        )
        self.db.add(release)
        for artist in featured:
            self.db.add(ReleaseArtist(release=release, artist=artist))

        result = RowResult(
            row_number=row_number,
            artist=primary,
            release=release,
            featured_artists=featured,
            artists_created=artists_created,
        )
        result.tracks = self._build_tracks(row, release)
        result.platform_requests = self._build_platform_requests(bag, release)
        return result

    def _resolve_artist(self, name: str, created: dict[str, Artist]) -> tuple[Artist, bool]:
        key = name.lower()
        if key in created:
            return created[key], False
        if key in self._artists:
            return self._artists[key], False

        artist = self.db.execute(
            select(Artist).where(func.lower(Artist.name) == key)
        ).scalar_one_or_none()
        if artist is not None:
            self._artists[key] = artist
            return artist, False

        artist = Artist(name=name)
        self.db.add(artist)
        created[key] = artist
        return artist, True

    def _release_meta(self, bag: dict[str, str]) -> dict[str, Any]:
        meta: dict[str, Any] = {k: bag[k] for k in META_FIELDS if bag.get(k)}
        raw_date = bag.get("release_date")
        if raw_date and parse_date(raw_date) is None:
            meta["release_date_raw"] = raw_date
        extra = {
            k: v for k, v in bag.items() if v and k not in _HANDLED_FIELDS and k not in SUBMISSION_FIELDS
        }
        if extra:
            meta["extra"] = extra
        return meta

    def _build_tracks(self, row: Mapping[str, Any], release: Release) -> list[Track]:
        tracks: list[Track] = []
        for song_index, group in self.song_groups:
            values = {m.target_field: clean(row.get(m.csv_column)) for m in group}
            if not any(values.values()):
                continue
            track = Track(
                release=release,
                track_number=len(tracks) + 1,
                song_index=song_index,
                **{k: v or None for k, v in values.items()},
            )
            self.db.add(track)
            tracks.append(track)
        return tracks

    def _build_platform_requests(
        self, bag: dict[str, str], release: Release
    ) -> list[PlatformRequest]:
        requests: list[PlatformRequest] = []
        for key in PLATFORM_KEYS:
            if not is_truthy(bag.get(f"{key}_request")):
                continue
            channels = split_names(bag.get(f"{key}_channel")) or [None]
            for channel in channels:
                request = PlatformRequest(
                    release=release,
                    platform=PLATFORM_NAMES[key],
                    channel=channel,
                    requested=True,
                    status=REQUEST_PENDING,
                )
                self.db.add(request)
                requests.append(request)
        return requests
