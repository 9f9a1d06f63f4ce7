"""Run client: consumes the relay's event stream and assembles the display-ready result."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

import httpx

from core import JobRequest, ProgressSignal, RawLine, RunResult, StatusUpdate, TerminalMarker, TerminalOutcome
from orchestrator.completion import CompletionTracker
from orchestrator.events import SSEDecoder, classify_message
from pipeline.posts_normalizer import display_content, normalize_posts
from storage.artifacts import (
    DEFAULT_CONTENT_ARTIFACT,
    DEFAULT_REPORT_ARTIFACT,
    ArtifactAggregator,
    HttpArtifactSource,
)
from utils.exceptions import ConfigurationError, StreamError


logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "Stream error. Check backend and .env."
LogFn = Callable[[str], None]


def _failure_message(signal: ProgressSignal) -> Optional[str]:
    """``None`` for a successful terminal signal, otherwise the user-facing error."""
    if isinstance(signal, StatusUpdate):
        return None if signal.succeeded else (signal.message or "Backend error")
    if isinstance(signal, TerminalMarker):
        if signal.outcome == TerminalOutcome.ERROR:
            return signal.message or "Backend error"
        if not signal.succeeded:
            return f"Job exited with code {signal.code}"
    return None


class RunClient:
    """
    Drives one run against the relay.

    Streams ``GET /run``, latches the first terminal signal (inline status
    JSON or named ``done``/``error`` event, whichever arrives first), then on
    success fetches both artifacts and normalizes the content. A transport
    error only becomes ``result.error`` when the latch is still open.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client_id: Optional[str] = None,
        timeout: float = 30.0,
        retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        aggregator: Optional[ArtifactAggregator] = None,
        content_name: str = DEFAULT_CONTENT_ARTIFACT,
        report_name: str = DEFAULT_REPORT_ARTIFACT,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ConfigurationError("Relay server URL is required")
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport
        self.aggregator = aggregator or ArtifactAggregator(
            HttpArtifactSource(self.base_url, timeout=timeout, retries=retries, transport=transport)
        )
        self.content_name = content_name
        self.report_name = report_name
        self._task: Optional[asyncio.Task] = None

    async def start(self, topic: Optional[str] = None, *, on_log: Optional[LogFn] = None) -> asyncio.Task:
        """Begin a run in the background, cancelling this client's previous run first."""
        await self.cancel()
        self._task = asyncio.create_task(self.run(topic, on_log=on_log))
        return self._task

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self, topic: Optional[str] = None, *, on_log: Optional[LogFn] = None) -> RunResult:
        result = RunResult(topic=JobRequest(topic=topic).topic)
        tracker = CompletionTracker()
        terminal: Optional[ProgressSignal] = None

        def log(line: str) -> None:
            result.logs.append(line)
            if on_log is not None:
                on_log(line)

        params = {}
        if result.topic:
            params["topic"] = result.topic
        if self.client_id:
            params["client_id"] = self.client_id

        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport) as client:
                async with client.stream("GET", "/run", params=params, headers={"accept": "text/event-stream"}) as response:
                    if response.status_code >= 400:
                        raise StreamError(f"Stream request failed with status {response.status_code}")
                    async for signal in self._signals(response):
                        if tracker.observe(signal):
                            terminal = signal
                            break
                        if isinstance(signal, RawLine):
                            log(signal.text)
                        elif isinstance(signal, StatusUpdate):
                            log(f"[{signal.status}] {signal.message or ''}".rstrip())
        except (httpx.HTTPError, StreamError) as exc:
            # past the latch this is teardown noise
            logger.warning(f"Run stream transport error: {exc}")

        if terminal is None:
            if tracker.should_report_transport_error():
                result.error = STREAM_ERROR_MESSAGE
            return result

        if isinstance(terminal, TerminalMarker):
            result.exit_code = terminal.code
        failure = _failure_message(terminal)
        if failure is not None:
            result.error = failure
            return result

        result.completed = True
        await self._collect_artifacts(result, log)
        return result

    async def _signals(self, response: httpx.Response) -> AsyncIterator[ProgressSignal]:
        decoder = SSEDecoder()
        async for text in response.aiter_text():
            for message in decoder.feed(text):
                yield classify_message(message)
        for message in decoder.flush():
            yield classify_message(message)

    async def _collect_artifacts(self, result: RunResult, log: LogFn) -> None:
        pair = await self.aggregator.fetch(self.content_name, self.report_name)
        for error in pair.errors.values():
            log(error)

        result.report = pair.report
        result.content_raw = pair.content
        if pair.content is not None:
            result.posts = normalize_posts(pair.content)
            result.content_display = display_content(pair.content)
