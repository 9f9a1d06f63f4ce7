"""Server-sent event framing for job progress, plus the client-side decoder."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from core import (
    ProgressSignal,
    RawLine,
    StatusUpdate,
    TerminalMarker,
    TerminalOutcome,
    is_terminal_signal,
)
from utils.exceptions import LaunchError


logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"


def format_data(text: Any) -> str:
    lines = str(text if text is not None else "").splitlines() or [""]
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\n" + format_data(data)


def format_status(status: str, message: Optional[str] = None) -> str:
    payload = {"status": status}
    if message:
        payload["message"] = message
    return format_data(json.dumps(payload, ensure_ascii=False))


def encode_signal(signal: ProgressSignal) -> str:
    """Serialize one progress signal into its wire frame."""
    if isinstance(signal, RawLine):
        return format_data(signal.text)
    if isinstance(signal, StatusUpdate):
        return format_status(signal.status, signal.message)
    if signal.outcome == TerminalOutcome.DONE:
        return format_event("done", signal.code if signal.code is not None else -1)
    return format_event("error", signal.message or "")


class EventStreamEncoder:
    """
    Turns a signal source into SSE frames over one long-lived response.

    Frames are yielded one at a time, so a frame is handed to the transport
    before the next signal is pulled. The source is closed exactly once:
    after the terminal frame, after an error frame, or when the consumer
    stops iterating (client disconnect).
    """

    def __init__(
        self,
        source: AsyncIterator[ProgressSignal],
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._source = source
        self._on_close = on_close
        self._closed = False
        self.terminal_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def frames(self) -> AsyncIterator[bytes]:
        try:
            async for signal in self._source:
                if self._closed:
                    break
                yield encode_signal(signal).encode("utf-8")
                if is_terminal_signal(signal):
                    self.terminal_sent = True
                    break
        except LaunchError as exc:
            logger.error(f"Job launch failed: {exc}")
            if not self._closed:
                self.terminal_sent = True
                yield encode_signal(TerminalMarker(outcome=TerminalOutcome.ERROR, message=exc.message)).encode("utf-8")
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is None:
            return
        try:
            await self._on_close()
        except Exception as exc:
            # teardown after disconnect is best effort
            logger.warning(f"Event stream cleanup failed: {exc}")


@dataclass
class SSEMessage:
    """One dispatched server-sent event."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None


class SSEDecoder:
    """Incremental parser for the ``text/event-stream`` grammar."""

    def __init__(self) -> None:
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None

    def feed(self, chunk: str) -> List[SSEMessage]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        messages: List[SSEMessage] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            message = self._process_line(line.rstrip("\r"))
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> List[SSEMessage]:
        """Dispatch whatever is pending at end of stream."""
        messages: List[SSEMessage] = []
        if self._buffer:
            tail, self._buffer = self._buffer, ""
            message = self._process_line(tail.rstrip("\r"))
            if message is not None:
                messages.append(message)
        message = self._dispatch()
        if message is not None:
            messages.append(message)
        return messages

    def _process_line(self, line: str) -> Optional[SSEMessage]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[SSEMessage]:
        if not self._data:
            self._event = None
            return None
        message = SSEMessage(event=self._event or "message", data="\n".join(self._data), id=self._id)
        self._event = None
        self._data = []
        return message


def classify_message(message: SSEMessage) -> ProgressSignal:
    """
    Map a decoded event onto a progress signal.

    Named ``done``/``error`` events are terminal markers. Every other payload
    is tried as JSON for a ``status`` field; anything else is a plain log line.
    """
    if message.event == TerminalOutcome.DONE.value:
        try:
            code = int(str(message.data).strip())
        except ValueError:
            code = -1
        return TerminalMarker(outcome=TerminalOutcome.DONE, code=code)
    if message.event == TerminalOutcome.ERROR.value:
        return TerminalMarker(outcome=TerminalOutcome.ERROR, message=message.data or None)

    try:
        payload = json.loads(message.data)
    except ValueError:
        return RawLine(text=message.data)
    if isinstance(payload, dict) and isinstance(payload.get("status"), str):
        detail = payload.get("message")
        return StatusUpdate(status=payload["status"], message=str(detail) if detail is not None else None)
    return RawLine(text=message.data)
