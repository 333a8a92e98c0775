from __future__ import annotations

import asyncio
import json

import pytest

from engine.progress import ProgressEvent, ProgressStream


def test_event_payload_shapes() -> None:
    assert ProgressEvent.progressing(20, "Validating video duration...").to_dict() == {
        "status": "progress",
        "message": "Validating video duration...",
        "progress": 20,
    }
    assert ProgressEvent.completed().to_dict() == {
        "status": "completed",
        "message": "Conversion completed",
        "progress": 100,
    }
    assert ProgressEvent.failed("invalid source link").to_dict() == {
        "status": "error",
        "message": "invalid source link",
        "error": "invalid source link",
    }


def test_event_is_framed_as_single_sse_data_line() -> None:
    frame = ProgressEvent.progressing(10, "Validating YouTube URL...").to_sse()

    assert frame.startswith(b"data: ")
    assert frame.endswith(b"\n\n")
    assert frame.count(b"\n") == 2
    assert json.loads(frame[len(b"data: "):]) == {
        "status": "progress",
        "message": "Validating YouTube URL...",
        "progress": 10,
    }


def test_stream_drops_events_after_terminal() -> None:
    async def _go():
        stream = ProgressStream("job")
        assert stream.emit(ProgressEvent.progressing(10, "a")) is True
        assert stream.emit(ProgressEvent.failed("boom")) is True
        assert stream.emit(ProgressEvent.progressing(20, "late")) is False
        assert stream.emit(ProgressEvent.completed()) is False
        return stream

    stream = asyncio.run(_go())

    assert [e.status for e in stream.history] == ["progress", "error"]
    assert stream.terminal_event.error == "boom"


def test_stream_rejects_decreasing_progress() -> None:
    async def _go():
        stream = ProgressStream("job")
        stream.emit(ProgressEvent.progressing(70, "a"))
        with pytest.raises(ValueError):
            stream.emit(ProgressEvent.progressing(20, "b"))
        stream.emit(ProgressEvent.progressing(70, "same value is fine"))
        return stream

    stream = asyncio.run(_go())
    assert [e.progress for e in stream.history] == [70, 70]


def test_stream_after_close_records_terminal_but_delivers_nothing() -> None:
    async def _go():
        stream = ProgressStream("job")
        stream.emit(ProgressEvent.progressing(10, "a"))
        stream.close()
        delivered = stream.emit(ProgressEvent.failed("client disconnected"))
        frames = [frame async for frame in stream.frames()]
        return stream, delivered, frames

    stream, delivered, frames = asyncio.run(_go())

    assert delivered is False
    assert stream.closed is True
    assert stream.terminal_event is not None
    assert len(frames) == 1
    assert len(stream.history) == 1


def test_frames_stop_after_terminal_event() -> None:
    async def _go():
        stream = ProgressStream("job")
        stream.emit(ProgressEvent.progressing(10, "a"))
        stream.emit(ProgressEvent.progressing(90, "b"))
        stream.emit(ProgressEvent.completed())
        return [json.loads(frame[6:]) async for frame in stream.frames()]

    payloads = asyncio.run(_go())

    assert [p["status"] for p in payloads] == ["progress", "progress", "completed"]
    assert payloads[-1]["progress"] == 100
