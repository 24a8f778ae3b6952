"""
PriceWatch — Text Sanitizing

Scraped strings can carry NUL bytes and other control characters that
Postgres rejects in text columns. Everything written to a run log or price
row goes through here first.
"""

from __future__ import annotations

import re

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_control_chars(value: str | None, max_length: int | None = None) -> str | None:
    """Remove control characters (keeps tab/newline/CR) and optionally truncate."""
    if value is None:
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", value)
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned


def clean_text(value: str | None, max_length: int | None = None) -> str | None:
    """Strip control characters and collapse all whitespace runs to one space."""
    if value is None:
        return None
    cleaned = " ".join(_CONTROL_CHARS_RE.sub("", value).split())
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned
