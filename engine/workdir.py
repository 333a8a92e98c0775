"""Per-job working storage and the job's cancellation signal."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from typing import Callable

from engine.errors import ResourceError
from engine.paths import ensure_dir, resolve_job_dir

logger = logging.getLogger(__name__)


class JobContext:
    """Cancellation signal shared by every stage of one job.

    ``cancel`` may be called from any thread and any number of times; only
    the first call has an effect. Callbacks registered with ``after_cancel``
    run on a background thread, so ``cancel`` never blocks on them.
    """

    def __init__(self, job_id: str, *, parent: JobContext | None = None) -> None:
        self.job_id = job_id
        self.reason: str | None = None
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], object]] = []
        self._workers: set = set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel_check(self) -> bool:
        return self.cancelled

    def child(self) -> JobContext:
        """Return a signal that fires when either it or this context is cancelled."""
        return JobContext(self.job_id, parent=self)

    def _root(self) -> JobContext:
        context = self
        while context._parent is not None:
            context = context._parent
        return context

    def track(self, worker) -> None:
        """Remember an in-flight worker future until it finishes."""
        workers = self._root()._workers
        workers.add(worker)
        worker.add_done_callback(workers.discard)

    def pending_workers(self) -> set:
        return {worker for worker in self._root()._workers if not worker.done()}

    def after_cancel(self, callback: Callable[[], object]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._schedule([callback])

    def cancel(self, reason: str = "cancelled") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        logger.info("Job cancelled job_id=%s reason=%s", self.job_id, reason)
        if callbacks:
            self._schedule(callbacks)
        return True

    def _schedule(self, callbacks):
        def _run():
            for callback in callbacks:
                try:
                    callback()
                except Exception:
                    logger.exception("Cancel callback failed job_id=%s", self.job_id)

        thread = threading.Thread(target=_run, name=f"job-cancel-{self.job_id}", daemon=True)
        thread.start()


class WorkDirectory:
    """Ephemeral ``<base>/<job id>/`` directory owned by a single job."""

    AUDIO_NAME = "audio.mp3"
    COVER_NAME = "cover.jpg"

    def __init__(self, path: str, job_id: str) -> None:
        self.path = path
        self.job_id = job_id
        self._lock = threading.Lock()
        self._released = False

    @classmethod
    def acquire(cls, base_dir, job_id: str) -> WorkDirectory:
        try:
            path = resolve_job_dir(str(base_dir), job_id)
            ensure_dir(path)
        except (OSError, ValueError) as exc:
            logger.error("Work directory creation failed job_id=%s error=%s", job_id, exc)
            raise ResourceError() from exc
        logger.debug("Work directory acquired path=%s", path)
        return cls(path, job_id)

    @property
    def audio_path(self) -> str:
        return os.path.join(self.path, self.AUDIO_NAME)

    @property
    def cover_path(self) -> str:
        return os.path.join(self.path, self.COVER_NAME)

    @property
    def released(self) -> bool:
        return self._released

    def file(self, name: str) -> str:
        return os.path.join(self.path, name)

    def bind(self, context: JobContext) -> None:
        """Schedule ``purge`` for when ``context`` is cancelled."""
        context.after_cancel(self.purge)

    def purge(self) -> None:
        """Remove the directory now without marking the handle released.

        Workers may still be writing when a job is cancelled; the owner's
        final ``release`` runs after they return and removes whatever they left.
        """
        with self._lock:
            if self._released:
                return
            shutil.rmtree(self.path, ignore_errors=True)
        logger.debug("Work directory purged path=%s", self.path)

    def release(self) -> bool:
        """Remove the directory and everything in it.

        Safe to call repeatedly and concurrently. Filesystem errors are logged
        and leave the handle unreleased so a later call can retry.
        """
        with self._lock:
            if self._released:
                return True
            try:
                shutil.rmtree(self.path)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Work directory removal failed path=%s", self.path, exc_info=True)
                return False
            self._released = True
        logger.debug("Work directory released path=%s", self.path)
        return True
