"""Progress events and the server-sent event stream that carries them."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator

logger = logging.getLogger(__name__)

STATUS_PROGRESS = "progress"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_ERROR}


@dataclass(frozen=True)
class ProgressEvent:
    status: str
    message: str
    progress: int | None = None
    error: str | None = None
    url: str | None = None

    @classmethod
    def progressing(cls, progress: int, message: str) -> ProgressEvent:
        return cls(STATUS_PROGRESS, message, progress=progress)

    @classmethod
    def completed(cls, message: str = "Conversion completed", *, url: str | None = None) -> ProgressEvent:
        return cls(STATUS_COMPLETED, message, progress=100, url=url)

    @classmethod
    def failed(cls, error: str) -> ProgressEvent:
        return cls(STATUS_ERROR, error, error=error)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        payload = {"status": self.status, "message": self.message}
        if self.status != STATUS_ERROR and self.progress is not None:
            payload["progress"] = self.progress
        if self.status == STATUS_ERROR:
            payload["error"] = self.error or self.message
        if self.status == STATUS_COMPLETED and self.url:
            payload["url"] = self.url
        return payload

    def to_sse(self) -> bytes:
        return f"data: {json.dumps(self.to_dict())}\n\n".encode("utf-8")


class ProgressStream:
    """Ordered, append-only queue of events for one response.

    The pipeline calls :meth:`emit`; the HTTP layer drains :meth:`frames`.
    Once a terminal event is accepted or the client is gone, further emits are
    logged and dropped.
    """

    def __init__(self, job_id: str = "") -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._closed = False
        self._terminal: ProgressEvent | None = None
        self._last_progress = 0
        self.history: list[ProgressEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_event(self) -> ProgressEvent | None:
        return self._terminal

    def emit(self, event: ProgressEvent) -> bool:
        if self._terminal is not None:
            logger.warning(
                "Dropping event after terminal event job_id=%s status=%s", self.job_id, event.status
            )
            return False
        if event.status != STATUS_ERROR and event.progress is not None:
            if event.progress < self._last_progress:
                raise ValueError(
                    f"progress must not decrease ({event.progress} < {self._last_progress})"
                )
            self._last_progress = event.progress
        if event.terminal:
            self._terminal = event
        if self._closed:
            logger.info("Client gone; event not delivered job_id=%s status=%s", self.job_id, event.status)
            return False
        self.history.append(event)
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Mark the client as gone and wake up any pending reader."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield one encoded SSE frame per event until the terminal event."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event.to_sse()
            if event.terminal:
                return
