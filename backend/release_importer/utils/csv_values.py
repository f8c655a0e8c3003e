"""Helpers for cleaning individual spreadsheet cell values."""

from __future__ import annotations

import re
from typing import Any

FALSY_VALUES = {"", "no", "n", "false", "0", "none", "-", "n/a", "na"}

_FT_BLOCK = re.compile(r"\(\s*ft\.?\s*-\s*([^)]+)\)", re.IGNORECASE)
_FEATURING = re.compile(r"\s+(?:ft\.?|feat\.?|featuring)\s+", re.IGNORECASE)
_STANDALONE_DIVIDER = re.compile(r"\s+[&/]\s+")


def clean(value: Any) -> str:
    """Return a trimmed string for any cell value (None -> "")."""
    if value is None:
        return ""
    return str(value).strip()


def is_truthy(value: Any) -> bool:
    """Spreadsheet truthiness: any non-empty value that is not an explicit no."""
    return clean(value).lower() not in FALSY_VALUES


def split_names(value: Any) -> list[str]:
    """Split an artist/channel cell into individual names.

    Handles commas, "ft."/"feat."/"featuring", standalone "&" and "/", and
    "Primary (Ft - A, B)" blocks. Primary names come first, then featured ones.
    """
    text = clean(value)
    if not text:
        return []

    featured: list[str] = []
    for block in _FT_BLOCK.findall(text):
        featured.extend(part.strip() for part in block.split(",") if part.strip())
    text = _FT_BLOCK.sub("", text).strip()

    text = _FEATURING.sub("|", text)
    text = _STANDALONE_DIVIDER.sub("|", text)
    primary = [part.strip() for part in re.split(r"[,|]+", text) if part.strip()]

    names: list[str] = []
    seen: set[str] = set()
    for name in primary + featured:
        key = name.lower()
        if key not in seen:
            seen.add(key)
            names.append(name)
    return names


def truncate(value: str, max_length: int) -> str:
    if len(value) > max_length:
        return value[:max_length] + "..."
    return value
