"""Reading uploaded CSV sources: whole-file parsing for preview and slices for batches."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path

from release_importer.core.exceptions import CsvFormatError, SourceUnavailableError
from release_importer.db.models import ImportSession
from release_importer.storage.file_storage import ensure_local_source

logger = logging.getLogger(__name__)


@dataclass
class ParsedSource:
    headers: list[str]
    rows: list[dict[str, str]] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows)


@dataclass
class SourceSlice:
    rows: list[dict[str, str]]
    # Byte position just past the last row read; None when unknown.
    end_offset: int | None = None


def clean_header(value: str | None) -> str:
    """Trim a header cell and strip quotes a spreadsheet export left around it."""
    text = (value or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1].strip()
    return text


def unique_headers(headers: list[str]) -> list[str]:
    """Suffix repeated header text so every column keeps its own key.

    ``["Notes", "Notes"]`` becomes ``["Notes", "Notes (2)"]``; blank headers are left as-is.
    """
    taken: set[str] = set()
    result = []
    for header in headers:
        name, n = header, 1
        while name and name in taken:
            n += 1
            name = f"{header} ({n})"
        taken.add(name)
        result.append(name)
    return result


class _TrackedLines:
    """Decode lines from a binary handle for csv.reader, counting bytes consumed."""

    def __init__(self, handle: io.BufferedReader):
        self.handle = handle
        self.position = 0

    def __iter__(self) -> "_TrackedLines":
        return self

    def __next__(self) -> str:
        raw = self.handle.readline()
        if not raw:
            raise StopIteration
        # Old Mac exports end lines with a bare CR, which readline() does not split on.
        cr = raw.find(b"\r")
        if -1 < cr < len(raw) - 1 and raw[cr + 1 : cr + 2] != b"\n":
            raw = raw[: cr + 1]
            self.handle.seek(self.position + len(raw))
        encoding = "utf-8-sig" if self.position == 0 else "utf-8"
        self.position += len(raw)
        return raw.decode(encoding)

    def seek(self, offset: int) -> None:
        self.handle.seek(offset)
        self.position = offset


def _iter_records(lines: Iterable[str]) -> tuple[list[str], Iterator[dict[str, str]]]:
    reader = csv.reader(lines)
    try:
        raw_headers = next(reader)
    except StopIteration:
        raise CsvFormatError("CSV file appears to be empty") from None

    headers = unique_headers([clean_header(h) for h in raw_headers])
    if not any(headers):
        raise CsvFormatError("CSV header row is blank")

    def records() -> Iterator[dict[str, str]]:
        for values in reader:
            if not any(v.strip() for v in values):
                continue
            record = {}
            for position, header in enumerate(headers):
                if not header:
                    continue
                record[header] = values[position].strip() if position < len(values) else ""
            yield record

    return headers, records()


def parse_upload(content: bytes) -> ParsedSource:
    """Parse raw upload bytes; row N of the result is ``rows[N - 1]``."""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise CsvFormatError(f"File encoding error: {e}") from e

    try:
        headers, records = _iter_records(io.StringIO(text, newline=""))
        rows = list(records)
    except csv.Error as e:
        raise CsvFormatError(f"CSV parsing error: {e}") from e

    logger.info(f"Parsed upload: {len(headers)} columns, {len(rows)} rows")
    return ParsedSource(headers=headers, rows=rows)


def read_rows(path: Path, start: int, stop: int, offset: int | None = None) -> SourceSlice:
    """Return data rows ``[start, stop)`` (0-based offsets, header excluded).

    ``offset`` is the byte position where row ``start`` begins, as returned in
    ``end_offset`` by the previous slice. When given, the reader seeks there
    instead of parsing every row before ``start``.
    """
    try:
        with path.open("rb") as handle:
            lines = _TrackedLines(handle)
            _, records = _iter_records(lines)
            skip = start
            if offset and offset >= lines.position:
                lines.seek(offset)
                skip = 0
            rows = list(islice(records, skip, skip + max(stop - start, 0)))
            return SourceSlice(rows=rows, end_offset=lines.position)
    except FileNotFoundError as e:
        raise SourceUnavailableError(f"CSV file not found: {path}") from e
    except UnicodeDecodeError as e:
        raise CsvFormatError(f"File encoding error: {e}") from e
    except csv.Error as e:
        raise CsvFormatError(f"CSV parsing error: {e}") from e


def load_slice(session: ImportSession, start: int, stop: int) -> SourceSlice:
    """Read a contiguous slice from the session's retained source.

    The stored ``source_offset`` always belongs to row ``rows_processed``, so it
    is only used when the slice starts there.
    """
    path = ensure_local_source(session.source_path, session.id)
    if path is None:
        raise SourceUnavailableError(
            f"Source for session {session.id} is not retained; resume with the original file"
        )
    if str(path) != session.source_path:
        session.source_path = str(path)
    offset = session.source_offset if start == session.rows_processed else None
    return read_rows(path, start, stop, offset)
