#!/usr/bin/env python3
import sys


def _require_python_311():
    if sys.version_info[:2] < (3, 11):
        found = sys.version.split()[0]
        raise SystemExit(
            f"ERROR: Audiograb requires Python 3.11+; found Python {found} "
            f"(executable: {sys.executable})"
        )


_require_python_311()

import asyncio
import logging
import os
import threading
import time
from collections import deque
from uuid import uuid4

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import load_settings
from engine.paths import ensure_dir, safe_job_id
from engine.pipeline import ConversionJob, ConversionPipeline
from engine.progress import ProgressStream
from engine.runtime import get_runtime_info, log_event
from engine.workdir import JobContext
from media.tools import YtDlpToolchain
from storage.s3 import S3Uploader

APP_NAME = "Audiograb API"
CONVERT_PATHS = ("/api/v1/convert", "/convert")
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
_TRUST_PROXY = os.environ.get("AUDIOGRAB_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}

logger = logging.getLogger(__name__)

_SETTINGS = load_settings()


class _RateLimiter:
    """Sliding one-minute window of request timestamps per client key."""

    def __init__(self, limit, window_seconds=60.0):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits = {}
        self._lock = threading.Lock()

    def allow(self, key, now=None):
        if self.limit <= 0:
            return True
        now = time.monotonic() if now is None else now
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            if len(self._hits) > 10_000:
                self._prune(cutoff)
            return True

    def _prune(self, cutoff):
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]


def _setup_logging(level, log_dir=None):
    root = logging.getLogger("")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    if not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if not log_dir:
        return
    ensure_dir(log_dir)
    log_path = os.path.join(log_dir, "audiograb.log")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


def _build_pipeline(settings):
    return ConversionPipeline(
        YtDlpToolchain.from_settings(settings),
        work_dir=settings.work_dir,
        max_duration_seconds=settings.max_duration_seconds,
        uploader=S3Uploader.from_settings(settings),
    )


app = FastAPI(title=APP_NAME)
app.state.settings = _SETTINGS
app.state.rate_limiter = _RateLimiter(_SETTINGS.rate_limit_per_minute)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(_SETTINGS.cors_origins),
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Accept", "Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    allow_credentials=False,
    max_age=300,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path in CONVERT_PATHS:
        client = request.client.host if request.client else "unknown"
        if not request.app.state.rate_limiter.allow(client):
            logger.warning("Rate limit exceeded client=%s", client)
            return JSONResponse({"detail": "rate limit exceeded"}, status_code=429)
    return await call_next(request)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = safe_job_id(request.headers.get("x-request-id"))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
async def startup():
    settings = app.state.settings
    _setup_logging(settings.log_level, settings.log_dir)
    ensure_dir(settings.work_dir)
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = _build_pipeline(settings)
    logging.info(
        "%s started work_dir=%s max_duration=%ss upload=%s",
        APP_NAME,
        settings.work_dir,
        settings.max_duration_seconds,
        "enabled" if settings.upload_enabled else "disabled",
    )


def _get_pipeline(current_app):
    pipeline = getattr(current_app.state, "pipeline", None)
    if pipeline is None:
        pipeline = _build_pipeline(current_app.state.settings)
        current_app.state.pipeline = pipeline
    return pipeline


def _log_task_result(task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logging.error("Conversion task crashed", exc_info=exc)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/version")
async def api_version():
    return get_runtime_info()


@app.get("/api/v1/convert")
@app.get("/convert")
async def api_convert(
    request: Request,
    url: str = Query(""),
    title: str = Query(""),
    artist: str = Query(""),
):
    """Stream a conversion as server-sent events.

    The response is always HTTP 200; failures are reported in-band as a
    terminal ``error`` event.
    """
    settings = request.app.state.settings
    pipeline = _get_pipeline(request.app)
    request_id = getattr(request.state, "request_id", None) or safe_job_id(None)
    # Client-supplied ids may repeat; the suffix keeps work directories unique.
    job_id = f"{request_id}-{uuid4().hex[:8]}"
    job = ConversionJob(job_id=job_id, url=url.strip(), title=title.strip(), artist=artist.strip())
    stream = ProgressStream(job_id)
    context = JobContext(job_id)

    async def event_stream():
        started = time.monotonic()
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(pipeline.run(job, stream, context=context))
        task.add_done_callback(_log_task_result)

        def _abort(reason):
            stream.close()
            context.cancel(reason)
            if not task.done():
                task.cancel()

        deadline = loop.call_later(settings.job_timeout_seconds, _abort, "deadline exceeded")
        try:
            async for frame in stream.frames():
                yield frame
        finally:
            deadline.cancel()
            if stream.terminal_event is None:
                _abort("client disconnected")
            log_event(
                logging.INFO,
                "conversion_request_finished",
                job_id=job_id,
                stage=job.stage,
                outcome=job.outcome,
                cancel_reason=context.reason,
                duration_seconds=round(time.monotonic() - started, 3),
            )

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=_SETTINGS.host,
        port=_SETTINGS.port,
        reload=False,
        timeout_graceful_shutdown=5,
    )
