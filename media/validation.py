"""Source URL and duration validation helpers."""

from __future__ import annotations

import re

_SOURCE_URL_RE = re.compile(
    r"^(?:https?://)?(?:m\.|www\.)?"
    r"(?:youtu\.be/|youtube\.com/(?:embed/|v/|watch\?v=|watch\?.+&v=))"
    r"((\w|-){11})(?:\S+)?$"
)


def is_valid_source_url(url: str | None) -> bool:
    """Return ``True`` for single-video YouTube links with an 11-character id."""
    if not url or not isinstance(url, str):
        return False
    return _SOURCE_URL_RE.match(url.strip()) is not None


def parse_duration(value: str | None) -> int:
    """Parse ``ss``, ``mm:ss`` or ``hh:mm:ss`` into whole seconds.

    Raises:
        ValueError: for empty input, more than three components, or any
        component that is not a non-negative integer.
    """
    text = str(value or "").strip()
    if not text:
        raise ValueError("empty duration")
    parts = text.split(":")
    if len(parts) > 3:
        raise ValueError(f"unexpected duration format: {text!r}")
    seconds = 0
    for part in parts:
        if not part.isdigit():
            raise ValueError(f"invalid number in duration: {text!r}")
        seconds = seconds * 60 + int(part)
    return seconds


def format_duration_limit(seconds: int) -> str:
    """Human label used in the over-limit error, e.g. ``5 minutes``."""
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} seconds"
