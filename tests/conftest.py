import io
import os
import sys
import threading
import time
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.errors import CancelledError  # noqa: E402
from media.validation import is_valid_source_url  # noqa: E402

VALID_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
THUMBNAIL_URL = "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg"


def make_image_bytes(width=800, height=600, fmt="PNG", color=(30, 60, 90)):
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def wait_for_cancel(cancel_check, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cancel_check and cancel_check():
            raise CancelledError("cancelled")
        time.sleep(0.01)
    raise AssertionError("cancel signal never arrived")


class FakeToolchain:
    """In-memory stand-in for yt-dlp/ffmpeg used by pipeline and API tests."""

    def __init__(
        self,
        *,
        duration=225,
        probe_error=None,
        audio_error=None,
        cover_error=None,
        embed_error=None,
        thumbnail_url=THUMBNAIL_URL,
        thumbnail_bytes=None,
        audio_blocks=False,
        cover_blocks=False,
        writes_after_cancel=False,
    ):
        self.duration = duration
        self.probe_error = probe_error
        self.audio_error = audio_error
        self.cover_error = cover_error
        self.embed_error = embed_error
        self.thumbnail_url = thumbnail_url
        self.thumbnail_bytes = thumbnail_bytes if thumbnail_bytes is not None else make_image_bytes()
        self.audio_blocks = audio_blocks
        self.cover_blocks = cover_blocks
        self.writes_after_cancel = writes_after_cancel
        self.calls = []
        self.work_dirs = []
        self.embed_inputs = None
        self.audio_started = threading.Event()
        self.cover_cancelled = threading.Event()
        self.cover_fetching = threading.Event()

    def validate_source_url(self, url):
        self.calls.append("validate")
        return is_valid_source_url(url)

    def probe_duration(self, url, *, cancel_check=None):
        self.calls.append("probe")
        if self.probe_error:
            raise self.probe_error
        return self.duration

    def resolve_thumbnail_url(self, url, *, cancel_check=None):
        self.calls.append("thumbnail_url")
        if self.cover_error:
            raise self.cover_error
        return self.thumbnail_url

    def fetch_bytes(self, url, *, cancel_check=None):
        self.calls.append("fetch")
        self.cover_fetching.set()
        if self.cover_blocks:
            try:
                wait_for_cancel(cancel_check)
            except CancelledError:
                self.cover_cancelled.set()
                raise
        return self.thumbnail_bytes

    def extract_audio(self, url, dest_dir, *, cancel_check=None):
        self.calls.append("extract_audio")
        self.work_dirs.append(dest_dir)
        self.audio_started.set()
        if self.audio_blocks:
            try:
                wait_for_cancel(cancel_check)
            except CancelledError:
                if self.writes_after_cancel:
                    # yt-dlp recreates its output directory for partial downloads.
                    time.sleep(0.3)
                    os.makedirs(dest_dir, exist_ok=True)
                    with open(os.path.join(dest_dir, "audio.webm.part"), "wb") as handle:
                        handle.write(b"partial")
                raise
        if self.audio_error:
            if self.cover_blocks:
                self.cover_fetching.wait(5.0)
            raise self.audio_error
        path = os.path.join(dest_dir, "audio.mp3")
        with open(path, "wb") as handle:
            handle.write(b"ID3\x03\x00fake-audio")
        return path

    def embed_metadata(self, audio_path, cover_path, title, artist, dest_path, *, cancel_check=None):
        self.calls.append("embed")
        self.embed_inputs = {
            "audio_exists": os.path.isfile(audio_path),
            "cover_exists": os.path.isfile(cover_path),
            "title": title,
            "artist": artist,
            "dest_path": dest_path,
        }
        if self.embed_error:
            raise self.embed_error
        with open(dest_path, "wb") as handle:
            handle.write(b"ID3\x03\x00tagged")


@pytest.fixture
def fake_toolchain_cls():
    return FakeToolchain
