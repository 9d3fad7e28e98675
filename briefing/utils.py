"""Shared utility functions used across Briefing modules."""
from __future__ import annotations

import json
import re
import unicodedata
from typing import Any

_MISSING = object()

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_SLUG_DASH_RE = re.compile(r"-+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def slugify(text: str) -> str:
    """Lowercase, strip diacritics, and collapse non-alphanumerics to hyphens."""
    text = unicodedata.normalize("NFD", (text or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _SLUG_STRIP_RE.sub("", text).strip()
    text = _SLUG_SPACE_RE.sub("-", text)
    return _SLUG_DASH_RE.sub("-", text).strip("-")


def truncate(text: str, limit: int) -> tuple[str, int]:
    """Cut *text* to *limit* characters. Returns (text, omitted_char_count)."""
    if limit <= 0 or len(text) <= limit:
        return text, 0
    return text[:limit], len(text) - limit
