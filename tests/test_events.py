from __future__ import annotations

import pytest

from core import RawLine, StatusUpdate, TerminalMarker, TerminalOutcome
from orchestrator.events import (
    EventStreamEncoder,
    SSEDecoder,
    SSEMessage,
    classify_message,
    encode_signal,
    format_data,
    format_event,
    format_status,
)
from utils.exceptions import NoRunnableBackendError


async def _source(*signals):
    for signal in signals:
        yield signal


def test_data_frames_split_multiline_text() -> None:
    assert format_data("hello") == "data: hello\n\n"
    assert format_data("a\nb") == "data: a\ndata: b\n\n"
    assert format_data("") == "data: \n\n"


def test_named_and_status_frames() -> None:
    assert format_event("done", 0) == "event: done\ndata: 0\n\n"
    assert format_status("completed") == 'data: {"status": "completed"}\n\n'
    assert format_status("failed", "boom") == 'data: {"status": "failed", "message": "boom"}\n\n'


def test_encode_terminal_markers() -> None:
    assert encode_signal(TerminalMarker(outcome=TerminalOutcome.DONE, code=3)) == "event: done\ndata: 3\n\n"
    assert encode_signal(TerminalMarker(outcome=TerminalOutcome.DONE)) == "event: done\ndata: -1\n\n"
    assert (
        encode_signal(TerminalMarker(outcome=TerminalOutcome.ERROR, message="no python"))
        == "event: error\ndata: no python\n\n"
    )


def test_decoder_handles_split_chunks_and_crlf() -> None:
    decoder = SSEDecoder()
    messages = decoder.feed("data: fir")
    assert messages == []
    messages = decoder.feed("st\r\n\r\n: keep-alive\n\nevent: done\ndata: 0\n")
    assert messages == [SSEMessage(event="message", data="first")]

    tail = decoder.flush()
    assert tail == [SSEMessage(event="done", data="0")]


def test_decoder_joins_multiple_data_lines() -> None:
    decoder = SSEDecoder()
    messages = decoder.feed("id: 7\ndata: a\ndata: b\n\n")

    assert messages == [SSEMessage(event="message", data="a\nb", id="7")]


def test_classify_message_variants() -> None:
    assert classify_message(SSEMessage(data="Crew started")) == RawLine(text="Crew started")
    assert classify_message(SSEMessage(data='{"status": "completed"}')) == StatusUpdate(status="completed")
    assert classify_message(SSEMessage(data='{"status": "failed", "message": "x"}')).message == "x"
    assert classify_message(SSEMessage(data='{"other": 1}')) == RawLine(text='{"other": 1}')
    assert classify_message(SSEMessage(data="[1, 2]")) == RawLine(text="[1, 2]")

    done = classify_message(SSEMessage(event="done", data="0"))
    assert done == TerminalMarker(outcome=TerminalOutcome.DONE, code=0)
    assert classify_message(SSEMessage(event="done", data="abc")).code == -1

    error = classify_message(SSEMessage(event="error", data="spawn failed"))
    assert error.outcome == TerminalOutcome.ERROR
    assert error.message == "spawn failed"


def test_status_terminality() -> None:
    assert StatusUpdate(status="completed").is_terminal
    assert StatusUpdate(status="failed").is_terminal
    assert not StatusUpdate(status="running").is_terminal
    assert not TerminalMarker(outcome=TerminalOutcome.DONE, code=2).succeeded


@pytest.mark.asyncio
async def test_encoder_stops_after_terminal_and_closes_once() -> None:
    closes = []

    async def _on_close() -> None:
        closes.append(True)

    encoder = EventStreamEncoder(
        _source(
            RawLine(text="one"),
            StatusUpdate(status="completed"),
            RawLine(text="never sent"),
        ),
        on_close=_on_close,
    )
    frames = [frame async for frame in encoder.frames()]
    await encoder.close()

    assert frames == [b"data: one\n\n", b'data: {"status": "completed"}\n\n']
    assert encoder.terminal_sent
    assert closes == [True]


@pytest.mark.asyncio
async def test_encoder_turns_launch_failure_into_error_frame() -> None:
    async def _failing():
        yield RawLine(text="Topic received: x")
        raise NoRunnableBackendError("Unable to spawn CrewAI CLI or Python process")

    encoder = EventStreamEncoder(_failing())
    frames = [frame async for frame in encoder.frames()]

    assert frames == [
        b"data: Topic received: x\n\n",
        b"event: error\ndata: Unable to spawn CrewAI CLI or Python process\n\n",
    ]
    assert encoder.closed


@pytest.mark.asyncio
async def test_encoder_cleanup_errors_are_contained() -> None:
    async def _broken_close() -> None:
        raise RuntimeError("pipe already gone")

    encoder = EventStreamEncoder(_source(RawLine(text="x")), on_close=_broken_close)
    frames = [frame async for frame in encoder.frames()]

    assert frames == [b"data: x\n\n"]
    assert encoder.closed
