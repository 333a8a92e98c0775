"""Output file naming helpers."""

from __future__ import annotations

import re
from typing import Any

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MULTISPACE_RE = re.compile(r"\s+")
_MAX_COMPONENT_LEN = 120


def sanitize_component(text: Any, fallback: str = "Unknown") -> str:
    """Return an OS-safe filesystem component with stable fallback."""
    sanitized = _INVALID_FS_CHARS_RE.sub("", str(text or ""))
    sanitized = _MULTISPACE_RE.sub(" ", sanitized).strip()
    sanitized = sanitized[:_MAX_COMPONENT_LEN].rstrip(" .")
    return sanitized or fallback


def build_output_filename(title: Any, artist: Any, ext: str = "mp3") -> str:
    """Build ``<artist> - <title>.<ext>`` for the tagged output file."""
    artist_part = sanitize_component(artist, "Unknown Artist")
    title_part = sanitize_component(title, "Unknown Title")
    return f"{artist_part} - {title_part}.{ext.lstrip('.')}"
