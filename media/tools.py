"""External tool invocation: yt-dlp, ffmpeg and plain HTTP fetches.

The pipeline only talks to the :class:`Toolchain` protocol. ``YtDlpToolchain``
is the production implementation; tests substitute an in-memory fake.
Every blocking call accepts ``cancel_check``, a zero-argument callable that
returns ``True`` once the job has been cancelled.
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import threading
import time
from typing import Callable, Optional, Protocol

import requests
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError

from engine.errors import CancelledError
from media.validation import is_valid_source_url, parse_duration

logger = logging.getLogger(__name__)

CancelCheck = Optional[Callable[[], bool]]

_POLL_INTERVAL_SECONDS = 0.2
_FETCH_CHUNK_SIZE = 64 * 1024


class Toolchain(Protocol):
    def validate_source_url(self, url: str) -> bool:
        """Return whether ``url`` points at an accepted source."""

    def probe_duration(self, url: str, *, cancel_check: CancelCheck = None) -> int:
        """Return the source duration in seconds."""

    def resolve_thumbnail_url(self, url: str, *, cancel_check: CancelCheck = None) -> str:
        """Return the URL of the source's thumbnail image."""

    def fetch_bytes(self, url: str, *, cancel_check: CancelCheck = None) -> bytes:
        """Download ``url`` and return the body."""

    def extract_audio(self, url: str, dest_dir: str, *, cancel_check: CancelCheck = None) -> str:
        """Extract the audio track as ``<dest_dir>/audio.mp3`` and return its path."""

    def embed_metadata(
        self,
        audio_path: str,
        cover_path: str,
        title: str,
        artist: str,
        dest_path: str,
        *,
        cancel_check: CancelCheck = None,
    ) -> None:
        """Write ``dest_path``: the audio with title, artist and cover attached."""


def _raise_if_cancelled(cancel_check: CancelCheck, reason: str = "Cancelled") -> None:
    if callable(cancel_check) and cancel_check():
        raise CancelledError(reason)


def run_cli(argv, *, cancel_check: CancelCheck = None, label: str | None = None) -> str:
    """Run ``argv`` to completion, terminating it when ``cancel_check`` fires.

    Returns the collected stderr. Raises ``CancelledError`` on cancellation,
    ``subprocess.CalledProcessError`` on a non-zero exit and ``RuntimeError``
    when the executable is missing.
    """
    label = label or os.path.basename(str(argv[0]))
    _raise_if_cancelled(cancel_check)
    stderr_lines: list[str] = []
    try:
        proc = subprocess.Popen(
            argv,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(f"{label} is not installed or not available in PATH") from exc

    def _read_stderr():
        stream = proc.stderr
        if stream is None:
            return
        for raw_line in iter(stream.readline, ""):
            stderr_lines.append(raw_line)
        stream.close()

    reader = threading.Thread(target=_read_stderr, name=f"{label}-stderr-reader", daemon=True)
    reader.start()

    cancelled = False
    while proc.poll() is None:
        if callable(cancel_check) and cancel_check():
            cancelled = True
            proc.terminate()
            break
        time.sleep(_POLL_INTERVAL_SECONDS)

    if cancelled:
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        reader.join(timeout=1)
        logger.info("%s terminated after cancellation", label)
        raise CancelledError(f"{label} cancelled")

    return_code = proc.wait()
    reader.join(timeout=1)
    stderr_output = "".join(stderr_lines).strip()
    if return_code != 0:
        raise subprocess.CalledProcessError(return_code, argv, stderr=stderr_output)
    return stderr_output


class YtDlpToolchain:
    """Toolchain backed by yt-dlp, ffmpeg and ``requests``."""

    AUDIO_BASENAME = "audio"

    def __init__(
        self,
        *,
        ytdlp_bin: str = "yt-dlp",
        ffmpeg_bin: str = "ffmpeg",
        fetch_timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.ytdlp_bin = ytdlp_bin
        self.ffmpeg_bin = ffmpeg_bin
        self.fetch_timeout = fetch_timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> YtDlpToolchain:
        return cls(
            ytdlp_bin=settings.ytdlp_bin,
            ffmpeg_bin=settings.ffmpeg_bin,
            fetch_timeout=settings.fetch_timeout_seconds,
        )

    def validate_source_url(self, url: str) -> bool:
        return is_valid_source_url(url)

    def _extract_info(self, url: str) -> dict:
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
        }
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as exc:
            raise RuntimeError(f"yt-dlp could not inspect {url}: {exc}") from exc
        if not isinstance(info, dict):
            raise RuntimeError(f"yt-dlp returned no info for {url}")
        return info

    def probe_duration(self, url: str, *, cancel_check: CancelCheck = None) -> int:
        _raise_if_cancelled(cancel_check)
        info = self._extract_info(url)
        duration = info.get("duration")
        if isinstance(duration, (int, float)) and duration >= 0:
            return math.ceil(duration)
        # Live streams and some extractors only report the formatted string.
        return parse_duration(info.get("duration_string"))

    def resolve_thumbnail_url(self, url: str, *, cancel_check: CancelCheck = None) -> str:
        _raise_if_cancelled(cancel_check)
        info = self._extract_info(url)
        thumbnail = info.get("thumbnail")
        if not thumbnail:
            candidates = [t.get("url") for t in info.get("thumbnails") or [] if isinstance(t, dict)]
            candidates = [c for c in candidates if c]
            thumbnail = candidates[-1] if candidates else None
        if not thumbnail:
            raise RuntimeError(f"no thumbnail available for {url}")
        return str(thumbnail).strip()

    def fetch_bytes(self, url: str, *, cancel_check: CancelCheck = None) -> bytes:
        _raise_if_cancelled(cancel_check)
        chunks = []
        with self._session.get(url, timeout=self.fetch_timeout, stream=True) as resp:
            resp.raise_for_status()
            for chunk in resp.iter_content(chunk_size=_FETCH_CHUNK_SIZE):
                _raise_if_cancelled(cancel_check)
                if chunk:
                    chunks.append(chunk)
        data = b"".join(chunks)
        if not data:
            raise RuntimeError(f"empty response body from {url}")
        return data

    def extract_audio(self, url: str, dest_dir: str, *, cancel_check: CancelCheck = None) -> str:
        output_template = os.path.join(dest_dir, f"{self.AUDIO_BASENAME}.%(ext)s")
        argv = [
            self.ytdlp_bin,
            "--extract-audio",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "0",
            "--no-playlist",
            "--no-keep-video",
            "--no-progress",
            "--output",
            output_template,
            url,
        ]
        run_cli(argv, cancel_check=cancel_check, label="yt-dlp")
        audio_path = os.path.join(dest_dir, f"{self.AUDIO_BASENAME}.mp3")
        if not os.path.isfile(audio_path):
            raise RuntimeError(f"yt-dlp finished without producing {audio_path}")
        return audio_path

    def embed_metadata(
        self,
        audio_path: str,
        cover_path: str,
        title: str,
        artist: str,
        dest_path: str,
        *,
        cancel_check: CancelCheck = None,
    ) -> None:
        argv = [
            self.ffmpeg_bin,
            "-y",
            "-loglevel",
            "error",
            "-i",
            audio_path,
            "-i",
            cover_path,
            "-map",
            "0:0",
            "-map",
            "1:0",
            "-metadata",
            f"title={title}",
            "-metadata",
            f"artist={artist}",
            "-c:a",
            "copy",
            "-c:v",
            "copy",
            "-id3v2_version",
            "3",
            "-disposition:v:0",
            "attached_pic",
            dest_path,
        ]
        run_cli(argv, cancel_check=cancel_check, label="ffmpeg")
