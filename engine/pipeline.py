"""Request-scoped conversion pipeline.

Stages run in a fixed order::

    validating -> duration_checked -> (audio || cover -> crop) -> embedding -> completed

Every transition is reported through a :class:`ProgressStream`. The job's
:class:`WorkDirectory` is released on every exit path, including client
disconnects, which surface here as cancellation of the job context.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional

import anyio

from engine.errors import (
    ArtifactError,
    CancelledError,
    ConversionError,
    EmbedError,
    InputError,
    SourceError,
    TransportError,
)
from engine.progress import ProgressEvent, ProgressStream
from engine.runtime import log_event
from engine.workdir import JobContext, WorkDirectory
from media.tools import Toolchain
from media.validation import format_duration_limit
from metadata.artwork import crop_cover, format_hint_from_url
from metadata.naming import build_output_filename

logger = logging.getLogger(__name__)

STAGE_RECEIVED = "received"
STAGE_VALIDATING = "validating"
STAGE_DURATION_CHECKED = "duration_checked"
STAGE_DOWNLOADING = "downloading"
STAGE_EMBEDDING = "embedding"
STAGE_COMPLETED = "completed"
STAGE_ERROR = "error"

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"

PROGRESS_VALIDATING = 10
PROGRESS_DURATION = 20
PROGRESS_DOWNLOADING = 70
PROGRESS_EMBEDDING = 90

MSG_INVALID_SOURCE = "invalid source link"
MSG_AUDIO_FAILED = "error downloading audio"
MSG_COVER_FAILED = "error downloading thumbnail"
MSG_INTERNAL = "conversion failed"


@dataclass
class ConversionJob:
    job_id: str
    url: str
    title: str
    artist: str
    stage: str = STAGE_RECEIVED
    outcome: Optional[str] = None
    output_path: Optional[str] = None
    download_url: Optional[str] = None


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as handle:
        handle.write(data)


def _artifact_ready(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path) and os.path.getsize(path) > 0


class ConversionPipeline:
    """Drive one :class:`ConversionJob` from request to tagged MP3."""

    def __init__(
        self,
        toolchain: Toolchain,
        *,
        work_dir,
        max_duration_seconds: int = 300,
        uploader: Any = None,
    ) -> None:
        self.toolchain = toolchain
        self.work_dir = work_dir
        self.max_duration_seconds = max_duration_seconds
        self.uploader = uploader

    async def run(
        self,
        job: ConversionJob,
        stream: ProgressStream,
        *,
        context: Optional[JobContext] = None,
    ) -> ProgressEvent:
        """Run ``job`` to its terminal event, emitting progress along the way."""
        context = context or JobContext(job.job_id)
        started = time.monotonic()
        workdir: Optional[WorkDirectory] = None
        try:
            try:
                workdir = WorkDirectory.acquire(self.work_dir, job.job_id)
                workdir.bind(context)
                event = await self._run_stages(job, workdir, stream, context)
                job.outcome = OUTCOME_SUCCESS
            except TransportError as exc:
                logger.info("Conversion aborted job_id=%s reason=%s", job.job_id, exc.message)
                event = ProgressEvent.failed(exc.message)
                job.outcome = OUTCOME_ERROR
            except ConversionError as exc:
                event = ProgressEvent.failed(exc.message)
                job.outcome = OUTCOME_ERROR
            except asyncio.CancelledError:
                context.cancel("request cancelled")
                job.stage = STAGE_ERROR
                job.outcome = OUTCOME_ERROR
                raise
            except Exception:
                logger.exception("Conversion failed unexpectedly job_id=%s stage=%s", job.job_id, job.stage)
                event = ProgressEvent.failed(MSG_INTERNAL)
                job.outcome = OUTCOME_ERROR
            if job.outcome == OUTCOME_ERROR:
                job.stage = STAGE_ERROR
            stream.emit(event)
        finally:
            await self._drain(context)
            if workdir is not None:
                workdir.release()
        log_event(
            logging.INFO if job.outcome == OUTCOME_SUCCESS else logging.WARNING,
            "conversion_finished",
            job_id=job.job_id,
            outcome=job.outcome,
            stage=job.stage,
            error=event.error,
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        return event

    async def _run_stages(self, job, workdir, stream, context) -> ProgressEvent:
        job.stage = STAGE_VALIDATING
        if not (job.url and job.title and job.artist):
            raise InputError()
        stream.emit(ProgressEvent.progressing(PROGRESS_VALIDATING, "Validating YouTube URL..."))
        if not self.toolchain.validate_source_url(job.url):
            raise InputError(MSG_INVALID_SOURCE)

        job.stage = STAGE_DURATION_CHECKED
        stream.emit(ProgressEvent.progressing(PROGRESS_DURATION, "Validating video duration..."))
        try:
            duration = await self._call(context, self.toolchain.probe_duration, job.url)
        except Exception as exc:
            self._raise_if_aborted(context, exc)
            logger.warning("Duration probe failed job_id=%s error=%s", job.job_id, exc)
            raise SourceError() from exc
        if duration > self.max_duration_seconds:
            logger.info(
                "Source rejected job_id=%s duration=%ss limit=%ss",
                job.job_id,
                duration,
                self.max_duration_seconds,
            )
            raise SourceError(f"video is longer than {format_duration_limit(self.max_duration_seconds)}")

        job.stage = STAGE_DOWNLOADING
        stream.emit(ProgressEvent.progressing(PROGRESS_DOWNLOADING, "Downloading audio and thumbnail..."))
        audio_path, cover_path = await self._download_artifacts(job, workdir, context)

        job.stage = STAGE_EMBEDDING
        stream.emit(ProgressEvent.progressing(PROGRESS_EMBEDDING, "Embedding mp3 file..."))
        job.output_path = await self._embed(job, workdir, context, audio_path, cover_path)
        job.download_url = await self._upload(job, context)

        job.stage = STAGE_COMPLETED
        return ProgressEvent.completed(url=job.download_url)

    async def _call(self, context: JobContext, func, *args):
        self._check_cancelled(context)
        result = await self._in_thread(
            context, functools.partial(func, *args, cancel_check=context.cancel_check)
        )
        self._check_cancelled(context)
        return result

    async def _in_thread(self, context: JobContext, func, *args):
        # Shielded: a cancelled request leaves the thread running, and run()
        # drains tracked workers before the work directory is released.
        worker = asyncio.ensure_future(anyio.to_thread.run_sync(func, *args))
        context.track(worker)
        return await asyncio.shield(worker)

    @staticmethod
    async def _drain(context: JobContext) -> None:
        pending = context.pending_workers()
        if pending:
            logger.debug("Waiting for %d worker(s) job_id=%s", len(pending), context.job_id)
            await asyncio.wait(pending)

    @staticmethod
    def _check_cancelled(context: JobContext) -> None:
        if context.cancelled:
            raise TransportError(context.reason or TransportError.default_message)

    @staticmethod
    def _raise_if_aborted(context: JobContext, exc: BaseException) -> None:
        if context.cancelled:
            raise TransportError(context.reason or TransportError.default_message) from exc

    async def _download_artifacts(self, job, workdir, context):
        fork = context.child()

        async def _branch(name, coro):
            try:
                return await coro
            except Exception:
                # Let the sibling stop early; the join below still waits for it.
                fork.cancel(f"{name} branch failed")
                raise

        audio_result, cover_result = await asyncio.gather(
            _branch("audio", self._download_audio(job, workdir, fork)),
            _branch("cover", self._download_cover(job, workdir, fork)),
            return_exceptions=True,
        )

        failures = [
            (name, result)
            for name, result in (("audio", audio_result), ("cover", cover_result))
            if isinstance(result, BaseException)
        ]
        if not failures:
            return audio_result, cover_result

        for name, exc in failures:
            logger.warning("Artifact branch failed job_id=%s branch=%s error=%r", job.job_id, name, exc)
        self._raise_if_aborted(context, failures[0][1])
        genuine = [f for f in failures if not isinstance(f[1], (CancelledError, TransportError))]
        name, exc = (genuine or failures)[0]
        if isinstance(exc, ArtifactError):
            raise exc
        raise ArtifactError(MSG_AUDIO_FAILED if name == "audio" else MSG_COVER_FAILED) from exc

    async def _download_audio(self, job, workdir, fork) -> str:
        return await self._call(fork, self.toolchain.extract_audio, job.url, workdir.path)

    async def _download_cover(self, job, workdir, fork) -> str:
        thumbnail_url = await self._call(fork, self.toolchain.resolve_thumbnail_url, job.url)
        data = await self._call(fork, self.toolchain.fetch_bytes, thumbnail_url)
        cropped = await self._in_thread(fork, crop_cover, data, format_hint_from_url(thumbnail_url))
        self._check_cancelled(fork)
        await self._in_thread(fork, _write_bytes, workdir.cover_path, cropped)
        return workdir.cover_path

    async def _embed(self, job, workdir, context, audio_path, cover_path) -> str:
        audio_path = audio_path or workdir.audio_path
        if not (_artifact_ready(audio_path) and _artifact_ready(cover_path)):
            logger.error("Embedding skipped; artifacts missing job_id=%s", job.job_id)
            raise EmbedError()
        output_path = workdir.file(build_output_filename(job.title, job.artist))
        try:
            await self._call(
                context,
                self.toolchain.embed_metadata,
                audio_path,
                cover_path,
                job.title,
                job.artist,
                output_path,
            )
        except Exception as exc:
            self._raise_if_aborted(context, exc)
            logger.warning("Embedding failed job_id=%s error=%s", job.job_id, exc)
            raise EmbedError() from exc
        if not _artifact_ready(output_path):
            raise EmbedError()
        return output_path

    async def _upload(self, job, context) -> Optional[str]:
        if self.uploader is None or not job.output_path:
            return None
        key = f"{job.job_id}/{os.path.basename(job.output_path)}"
        try:
            return await self._in_thread(context, self.uploader.upload, job.output_path, key)
        except Exception:
            logger.warning("Upload failed job_id=%s", job.job_id, exc_info=True)
            return None
