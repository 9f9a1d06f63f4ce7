"""Job launch strategies: local subprocess or remote HTTP runner, behind one JobHandle."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import codecs
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import httpx

from config import RelaySettings
from core import ProgressSignal, RawLine, TerminalMarker, TerminalOutcome
from utils.exceptions import LaunchError, NoRunnableBackendError

from .environment import resolve_environment
from .events import EventStreamEncoder


logger = logging.getLogger(__name__)

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_EOF = object()
_BACKGROUND_TASKS: Set[asyncio.Task] = set()


def _keep_alive(task: asyncio.Task) -> asyncio.Task:
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    return task


def prepare_environment(settings: RelaySettings, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Process environment with the job's PYTHONPATH, then the override file on top."""
    seed = dict(os.environ if base is None else base)
    seed["PYTHONPATH"] = settings.pythonpath
    return resolve_environment(seed, settings.env_file_path)


async def _spawn_process(argv: List[str], *, cwd: Path, env: Mapping[str, str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=dict(env),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


@dataclass
class LaunchCandidate:
    """One way of starting the local job."""

    kind: str
    argv: List[str]

    def describe(self) -> str:
        if self.kind == "cli":
            return f"Using CLI: {' '.join(self.argv)}"
        return f"Using interpreter: {self.argv[0]}"


class JobHandle(ABC):
    """Owns exactly one job transport; closed at most once."""

    mode = "base"

    def __init__(self) -> None:
        self._closed = False
        self.status_code = 200

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        """True once nothing is left running behind this handle."""
        return self._closed

    @abstractmethod
    def iter_frames(self) -> AsyncIterator[bytes]:
        """Wire frames for the client, ending with the job's terminal frame."""
        pass

    async def close(self) -> None:
        """Release the transport. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        await self._release()

    async def terminate(self) -> None:
        """Stop the underlying job if it is still running."""
        await self.close()

    @abstractmethod
    async def _release(self) -> None:
        pass


class LocalJobHandle(JobHandle):
    """Child-process job; stdout and stderr lines become progress signals."""

    mode = "local"

    def __init__(
        self,
        *,
        candidates: List[LaunchCandidate],
        cwd: Path,
        env: Dict[str, str],
        preamble: List[str],
        artifact_paths: List[Path],
        log_path: Optional[Path] = None,
        spawn: Optional[SpawnFn] = None,
    ) -> None:
        super().__init__()
        self.candidates = list(candidates)
        self.cwd = cwd
        self.env = env
        self.preamble = list(preamble)
        self.artifact_paths = list(artifact_paths)
        self.log_path = log_path
        self.command: Optional[List[str]] = None
        self.launch_note = ""
        self.process: Optional[asyncio.subprocess.Process] = None
        self._spawn = spawn or _spawn_process
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pumps: List[asyncio.Task] = []
        self._detached = False

    async def start(self) -> str:
        """Spawn the first candidate that starts. Returns the launch description."""
        if self.process is not None:
            return self.launch_note
        attempted: List[str] = []
        for candidate in self.candidates:
            try:
                process = await self._spawn(candidate.argv, cwd=self.cwd, env=self.env)
            except OSError as exc:
                logger.warning(f"[local] Could not start {candidate.argv[0]}: {exc}")
                attempted.append(candidate.argv[0])
                continue
            self.process = process
            self.command = list(candidate.argv)
            self.launch_note = candidate.describe()
            self._start_pumps()
            logger.info(f"[local] Started job: {' '.join(candidate.argv)} (cwd={self.cwd})")
            return self.launch_note
        raise NoRunnableBackendError("Unable to spawn CrewAI CLI or Python process", attempted=attempted)

    def _start_pumps(self) -> None:
        assert self.process is not None
        for stream in (self.process.stdout, self.process.stderr):
            if stream is not None:
                self._pumps.append(_keep_alive(asyncio.create_task(self._pump(stream))))

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                pending += decoder.decode(chunk)
                *lines, pending = _LINE_SPLIT_RE.split(pending)
                for line in lines:
                    self._emit(line)
            pending += decoder.decode(b"", final=True)
            if pending:
                self._emit(pending)
        finally:
            self._queue.put_nowait(_EOF)

    def _emit(self, line: str) -> None:
        # after a disconnect the pipes are still drained so the job can finish
        if line and not self._detached:
            self._queue.put_nowait(line)

    async def signals(self) -> AsyncIterator[ProgressSignal]:
        for line in self.preamble:
            yield RawLine(text=line)

        yield RawLine(text=await self.start())

        remaining = len(self._pumps)
        while remaining:
            item = await self._queue.get()
            if item is _EOF:
                remaining -= 1
                continue
            yield RawLine(text=item)

        code = await self.process.wait()
        code = -1 if code is None else code
        yield RawLine(text=f"Process exited with code: {code}")
        yield RawLine(text=f"Backend CWD was: {self.cwd}")
        for path in self.artifact_paths:
            yield RawLine(text=f"Check output: {path.name} exists? {str(path.exists()).lower()}")
        if self.log_path is not None:
            yield RawLine(text=f"Check log: {self.log_path.name} exists? {str(self.log_path.exists()).lower()}")
        yield TerminalMarker(outcome=TerminalOutcome.DONE, code=code)

    async def iter_frames(self) -> AsyncIterator[bytes]:
        encoder = EventStreamEncoder(self.signals(), on_close=self.close)
        async for frame in encoder.frames():
            yield frame

    @property
    def finished(self) -> bool:
        if not self.closed:
            return False
        return self.process is None or self.process.returncode is not None

    async def _release(self) -> None:
        self._detached = True
        process = self.process
        if process is not None and process.returncode is None:
            # reap in the background; pumps keep draining until EOF
            _keep_alive(asyncio.create_task(process.wait()))

    async def terminate(self) -> None:
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                logger.info(f"[local] Terminated job pid={process.pid}")
            except ProcessLookupError:
                pass
        await self.close()


class RemoteJobHandle(JobHandle):
    """Streaming HTTP response from the remote runner, relayed byte for byte."""

    mode = "remote"

    def __init__(self, *, client: httpx.AsyncClient, response: httpx.Response) -> None:
        super().__init__()
        self._client = client
        self._response = response
        self.status_code = response.status_code

    async def iter_frames(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_raw():
                if self.closed:
                    break
                yield chunk
        except httpx.HTTPError as exc:
            # the client sees a stream without a terminal frame and reports it
            logger.warning(f"[remote] Upstream stream dropped: {exc}")
        finally:
            await self.close()

    async def _release(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class JobLauncher(ABC):
    """Strategy interface: start a job, get a progress stream."""

    mode = "base"

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings

    @abstractmethod
    async def launch(self, topic: Optional[str], environment: Mapping[str, str]) -> JobHandle:
        pass


class LocalJobLauncher(JobLauncher):
    """Runs the job as a child process of this server."""

    mode = "local"

    def __init__(self, settings: RelaySettings, *, spawn: Optional[SpawnFn] = None) -> None:
        super().__init__(settings)
        self._spawn = spawn

    def candidates(self, environment: Mapping[str, str]) -> List[LaunchCandidate]:
        found: List[LaunchCandidate] = []
        cli_path = self.settings.cli_path
        if cli_path.exists():
            found.append(LaunchCandidate(kind="cli", argv=[str(cli_path), "run"]))

        preferred = str(environment.get("PYTHON_BIN") or self.settings.python_bin or "").strip()
        seen: Set[str] = set()
        for binary in [preferred, *self.settings.fallback_interpreters]:
            binary = str(binary or "").strip()
            if not binary or binary in seen:
                continue
            seen.add(binary)
            found.append(LaunchCandidate(kind="interpreter", argv=[binary, "-m", self.settings.job_module]))
        return found

    @staticmethod
    def preamble(topic: Optional[str], environment: Mapping[str, str]) -> List[str]:
        lines = [f"Topic received: {topic}" if topic else "No topic provided. Backend will use default."]
        lines.append(f"PYTHON_BIN: {environment.get('PYTHON_BIN') or 'not set'}")
        lines.append(f"PYTHONPATH: {environment.get('PYTHONPATH') or 'not set'}")

        detected = [key for key in environment if key.endswith("_API_KEY")]
        if detected:
            lines.append(f"Detected provider keys: {', '.join(detected)}")
        else:
            lines.append("No provider API key detected in environment. Proceeding anyway.")
            lines.append("Set your key(s) in backend/.env (e.g., GROQ_API_KEY=...)")
        return lines

    async def launch(self, topic: Optional[str], environment: Mapping[str, str]) -> LocalJobHandle:
        env = {str(key): str(value) for key, value in environment.items()}
        if topic:
            env["TOPIC"] = topic

        backend_dir = self.settings.backend_dir
        return LocalJobHandle(
            candidates=self.candidates(env),
            cwd=backend_dir,
            env=env,
            preamble=self.preamble(topic, env),
            artifact_paths=[backend_dir / name for name in self.settings.artifact_names],
            log_path=backend_dir / self.settings.log_artifact,
            spawn=self._spawn,
        )


class RemoteJobLauncher(JobLauncher):
    """Opens the remote runner's streaming job endpoint."""

    mode = "remote"

    def __init__(self, settings: RelaySettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(settings)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.settings.request_timeout, read=None)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def launch(self, topic: Optional[str], environment: Mapping[str, str]) -> RemoteJobHandle:
        _ = environment
        client = self._client()
        params: Dict[str, Any] = {"topic": topic} if topic else {}
        request = client.build_request(
            "GET",
            f"{self.settings.backend_url}/run",
            params=params,
            headers={"accept": "text/event-stream"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise LaunchError(f"Remote job runner unreachable: {exc}", mode="remote", url=str(request.url)) from exc
        logger.info(f"[remote] Streaming {request.url} -> {response.status_code}")
        return RemoteJobHandle(client=client, response=response)

    async def submit(self, topic: Optional[str]) -> Dict[str, Any]:
        """Fire-and-forget job submission: ``POST /run``."""
        payload: Dict[str, Any] = {"topic": topic} if topic else {}
        async with self._client() as client:
            try:
                response = await client.post(f"{self.settings.backend_url}/run", json=payload)
            except httpx.HTTPError as exc:
                raise LaunchError(f"Remote job runner unreachable: {exc}", mode="remote") from exc
        try:
            data = response.json()
        except ValueError:
            data = {"status": "unknown"}
        return {"ok": response.is_success, "status": response.status_code, "data": data}


def select_launcher(settings: RelaySettings, **kwargs: Any) -> JobLauncher:
    """Pick the launch strategy once per launch: remote when a backend URL is set."""
    if settings.remote_mode:
        return RemoteJobLauncher(settings, transport=kwargs.get("transport"))
    return LocalJobLauncher(settings, spawn=kwargs.get("spawn"))
