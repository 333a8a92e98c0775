from __future__ import annotations

import pytest

from media.validation import format_duration_limit, is_valid_source_url, parse_duration


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "http://youtube.com/watch?v=dQw4w9WgXcQ",
        "youtube.com/watch?v=dQw4w9WgXcQ",
        "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "https://www.youtube.com/v/dQw4w9WgXcQ",
        "https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42s",
    ],
)
def test_is_valid_source_url_accepts_single_video_links(url: str) -> None:
    assert is_valid_source_url(url) is True


@pytest.mark.parametrize(
    "url",
    [
        "",
        None,
        "https://notyoutube.com/watch?v=dQw4w9WgXcQ",
        "https://www.youtube.com/watch?v=short",
        "https://www.youtube.com/playlist?list=PL1234567890",
        "https://vimeo.com/123456789",
        "not a url at all",
    ],
)
def test_is_valid_source_url_rejects_everything_else(url) -> None:
    assert is_valid_source_url(url) is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("45", 45),
        ("3:45", 225),
        ("08:10", 490),
        ("1:02:03", 3723),
        ("0:00", 0),
    ],
)
def test_parse_duration_handles_supported_shapes(value: str, expected: int) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", None, ":45", "3:ab", "1:2:3:4", "-5"])
def test_parse_duration_rejects_malformed_values(value) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)


def test_format_duration_limit_labels() -> None:
    assert format_duration_limit(300) == "5 minutes"
    assert format_duration_limit(60) == "1 minute"
    assert format_duration_limit(90) == "90 seconds"
