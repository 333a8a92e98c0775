"""Application settings loaded from the environment."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

# Longest source video accepted for conversion. Policy, not a technical limit.
MAX_DURATION_SECONDS = 300

# Deadline for one whole conversion, enforced by the HTTP layer.
JOB_TIMEOUT_SECONDS = 600.0

# Timeout for plain HTTP fetches (thumbnail bytes).
FETCH_TIMEOUT_SECONDS = 15.0

# Convert requests allowed per client IP per minute; 0 disables the limiter.
RATE_LIMIT_PER_MINUTE = 10

DEFAULT_S3_REGION = "eu-north-1"
UPLOAD_URL_TTL_SECONDS = 300


@dataclass(frozen=True)
class Settings:
    work_dir: Path
    max_duration_seconds: int = MAX_DURATION_SECONDS
    job_timeout_seconds: float = JOB_TIMEOUT_SECONDS
    fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS
    rate_limit_per_minute: int = RATE_LIMIT_PER_MINUTE
    cors_origins: tuple[str, ...] = ("*",)
    ytdlp_bin: str = "yt-dlp"
    ffmpeg_bin: str = "ffmpeg"
    s3_bucket: str | None = None
    s3_region: str = DEFAULT_S3_REGION
    upload_url_ttl_seconds: int = UPLOAD_URL_TTL_SECONDS
    log_level: str = "INFO"
    log_dir: Path | None = None
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def upload_enabled(self) -> bool:
        return bool(self.s3_bucket)


def _env_or_default(environ: Mapping[str, str], name: str, default: str) -> str:
    value = environ.get(name)
    return value.strip() if value and value.strip() else default


def _env_number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Invalid value for %s=%r; using default %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("Negative value for %s=%r; using default %s", name, raw, default)
        return default
    return value


def default_work_dir() -> Path:
    return Path(tempfile.gettempdir()) / "audiograb"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ

    origins = tuple(
        origin.strip()
        for origin in _env_or_default(env, "AUDIOGRAB_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    )
    log_dir = env.get("AUDIOGRAB_LOG_DIR")
    return Settings(
        work_dir=Path(_env_or_default(env, "AUDIOGRAB_WORK_DIR", str(default_work_dir()))).resolve(),
        max_duration_seconds=_env_number(env, "AUDIOGRAB_MAX_DURATION_SECONDS", MAX_DURATION_SECONDS, int),
        job_timeout_seconds=_env_number(env, "AUDIOGRAB_JOB_TIMEOUT_SECONDS", JOB_TIMEOUT_SECONDS, float),
        fetch_timeout_seconds=_env_number(env, "AUDIOGRAB_FETCH_TIMEOUT_SECONDS", FETCH_TIMEOUT_SECONDS, float),
        rate_limit_per_minute=_env_number(env, "AUDIOGRAB_RATE_LIMIT_PER_MINUTE", RATE_LIMIT_PER_MINUTE, int),
        cors_origins=origins or ("*",),
        ytdlp_bin=_env_or_default(env, "AUDIOGRAB_YTDLP_BIN", "yt-dlp"),
        ffmpeg_bin=_env_or_default(env, "AUDIOGRAB_FFMPEG_BIN", "ffmpeg"),
        s3_bucket=(env.get("AUDIOGRAB_S3_BUCKET") or "").strip() or None,
        s3_region=_env_or_default(env, "AWS_REGION", DEFAULT_S3_REGION),
        upload_url_ttl_seconds=_env_number(env, "AUDIOGRAB_UPLOAD_URL_TTL_SECONDS", UPLOAD_URL_TTL_SECONDS, int),
        log_level=_env_or_default(env, "AUDIOGRAB_LOG_LEVEL", "INFO").upper(),
        log_dir=Path(log_dir).resolve() if log_dir and log_dir.strip() else None,
        host=_env_or_default(env, "AUDIOGRAB_HOST", "127.0.0.1"),
        port=_env_number(env, "AUDIOGRAB_PORT", 8000, int),
    )
