from __future__ import annotations

import asyncio
import json
import os
import sys
import textwrap

import httpx
import pytest

from config import RelaySettings
from core import RawLine, TerminalMarker, TerminalOutcome
from orchestrator.launcher import (
    LocalJobLauncher,
    RemoteJobLauncher,
    prepare_environment,
    select_launcher,
)
from utils.exceptions import LaunchError, NoRunnableBackendError


def _settings(tmp_path, **overrides) -> RelaySettings:
    values = {
        "backend_dir": tmp_path,
        "backend_url": None,
        "python_bin": None,
        "fallback_interpreters": ["python3", "python"],
    }
    values.update(overrides)
    return RelaySettings(_env_file=None, **values)


class _FakeProcess:
    def __init__(self, stdout: bytes, stderr: bytes = b"", code: int = 0) -> None:
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_data(stdout)
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr)
        self.stderr.feed_eof()
        self.returncode = None
        self.pid = 4242
        self.terminated = False
        self._code = code

    async def wait(self) -> int:
        self.returncode = self._code
        return self._code

    def terminate(self) -> None:
        self.terminated = True


async def _collect(handle):
    return [signal async for signal in handle.signals()]


def test_candidates_prefer_cli_then_python_bin_then_fallbacks(tmp_path) -> None:
    cli = tmp_path / ".venv" / "bin" / "crewai"
    cli.parent.mkdir(parents=True)
    cli.write_text("#!/bin/sh\n", encoding="utf-8")
    launcher = LocalJobLauncher(_settings(tmp_path))

    argvs = [candidate.argv for candidate in launcher.candidates({"PYTHON_BIN": "/opt/py/bin/python3"})]

    assert argvs == [
        [str(cli), "run"],
        ["/opt/py/bin/python3", "-m", "socialcrew_ai.main"],
        ["python3", "-m", "socialcrew_ai.main"],
        ["python", "-m", "socialcrew_ai.main"],
    ]


def test_candidates_deduplicate_interpreters(tmp_path) -> None:
    launcher = LocalJobLauncher(_settings(tmp_path, python_bin="python3"))

    assert [candidate.argv[0] for candidate in launcher.candidates({})] == ["python3", "python"]


def test_preamble_reports_topic_and_keys() -> None:
    lines = LocalJobLauncher.preamble("AI productivity tools", {"PYTHONPATH": "src", "GROQ_API_KEY": "x"})

    assert lines == [
        "Topic received: AI productivity tools",
        "PYTHON_BIN: not set",
        "PYTHONPATH: src",
        "Detected provider keys: GROQ_API_KEY",
    ]


def test_preamble_without_topic_or_keys() -> None:
    lines = LocalJobLauncher.preamble(None, {})

    assert lines[0] == "No topic provided. Backend will use default."
    assert lines[-1] == "Set your key(s) in backend/.env (e.g., GROQ_API_KEY=...)"


@pytest.mark.asyncio
async def test_local_job_falls_through_to_next_candidate(tmp_path) -> None:
    (tmp_path / "social_posts.json").write_text("{}", encoding="utf-8")
    attempts = []
    spawned = {}

    async def _spawn(argv, *, cwd, env):
        attempts.append(argv[0])
        if argv[0] == "python3":
            raise FileNotFoundError("python3")
        spawned["env"] = env
        return _FakeProcess(b"Crew started\r\n\nwriting posts\n")

    launcher = LocalJobLauncher(_settings(tmp_path), spawn=_spawn)
    handle = await launcher.launch("AI tools", {"PYTHONPATH": "src"})
    signals = await _collect(handle)
    lines = [signal.text for signal in signals if isinstance(signal, RawLine)]

    assert attempts == ["python3", "python"]
    assert spawned["env"]["TOPIC"] == "AI tools"
    assert lines[0] == "Topic received: AI tools"
    assert "Using interpreter: python" in lines
    assert lines.index("Crew started") < lines.index("writing posts")
    assert "" not in lines
    assert "Process exited with code: 0" in lines
    assert "Check output: social_posts.json exists? true" in lines
    assert "Check output: analytics_summary.md exists? false" in lines
    assert "Check log: run.log exists? false" in lines
    assert signals[-1] == TerminalMarker(outcome=TerminalOutcome.DONE, code=0)


@pytest.mark.asyncio
async def test_local_job_with_no_runnable_candidate_emits_error_frame(tmp_path) -> None:
    async def _spawn(argv, *, cwd, env):
        raise FileNotFoundError(argv[0])

    handle = await LocalJobLauncher(_settings(tmp_path), spawn=_spawn).launch(None, {})
    frames = [frame async for frame in handle.iter_frames()]

    assert frames[0] == b"data: No topic provided. Backend will use default.\n\n"
    assert frames[-1] == b"event: error\ndata: Unable to spawn CrewAI CLI or Python process\n\n"
    assert handle.closed

    with pytest.raises(NoRunnableBackendError) as excinfo:
        await handle.start()
    assert excinfo.value.attempted == ["python3", "python"]


@pytest.mark.asyncio
async def test_local_job_nonzero_exit_still_ends_with_done(tmp_path) -> None:
    async def _spawn(argv, *, cwd, env):
        return _FakeProcess(b"", b"Traceback: boom\n", code=2)

    handle = await LocalJobLauncher(_settings(tmp_path), spawn=_spawn).launch("x", {})
    frames = [frame async for frame in handle.iter_frames()]

    assert b"data: Traceback: boom\n\n" in frames
    assert frames[-1] == b"event: done\ndata: 2\n\n"


@pytest.mark.asyncio
async def test_terminate_stops_running_process_once(tmp_path) -> None:
    process = _FakeProcess(b"")

    async def _spawn(argv, *, cwd, env):
        return process

    handle = await LocalJobLauncher(_settings(tmp_path), spawn=_spawn).launch("x", {})
    await handle.start()
    await handle.terminate()
    await handle.terminate()

    assert process.terminated
    assert handle.closed


@pytest.mark.asyncio
async def test_real_subprocess_streams_output_and_reads_env(tmp_path) -> None:
    src = tmp_path / "src"
    src.mkdir()
    (src / "fake_job.py").write_text(
        textwrap.dedent(
            """
            import json
            import os

            print(f"topic={os.environ.get('TOPIC')}", flush=True)
            print(f"key={os.environ.get('GROQ_API_KEY')}", flush=True)
            with open("social_posts.json", "w", encoding="utf-8") as fh:
                json.dump({"x": [{"hook": "hi"}]}, fh)
            """
        ),
        encoding="utf-8",
    )
    (tmp_path / ".env").write_text('GROQ_API_KEY="from-dotenv"\n', encoding="utf-8")
    settings = _settings(tmp_path, python_bin=sys.executable, fallback_interpreters=[], job_module="fake_job")

    environment = prepare_environment(settings, {"PATH": os.environ.get("PATH", "")})
    handle = await LocalJobLauncher(settings).launch("AI productivity tools", environment)
    signals = await _collect(handle)
    lines = [signal.text for signal in signals if isinstance(signal, RawLine)]

    assert "topic=AI productivity tools" in lines
    assert "key=from-dotenv" in lines
    assert "Check output: social_posts.json exists? true" in lines
    assert signals[-1].code == 0
    assert json.loads((tmp_path / "social_posts.json").read_text(encoding="utf-8")) == {"x": [{"hook": "hi"}]}


@pytest.mark.asyncio
async def test_remote_launch_relays_upstream_bytes_and_status(tmp_path) -> None:
    body = b'data: Crew started\n\ndata: {"status": "completed"}\n\n'

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/run"
        assert request.url.params["topic"] == "AI tools"
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    settings = _settings(tmp_path, backend_url="http://runner.test/")
    launcher = select_launcher(settings, transport=httpx.MockTransport(_handler))
    assert isinstance(launcher, RemoteJobLauncher)

    handle = await launcher.launch("AI tools", {})
    relayed = b"".join([chunk async for chunk in handle.iter_frames()])

    assert handle.status_code == 200
    assert relayed == body
    assert handle.closed


@pytest.mark.asyncio
async def test_remote_launch_unreachable_raises_launch_error(tmp_path) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    launcher = RemoteJobLauncher(_settings(tmp_path, backend_url="http://runner.test"), transport=httpx.MockTransport(_handler))

    with pytest.raises(LaunchError) as excinfo:
        await launcher.launch(None, {})
    assert excinfo.value.mode == "remote"


@pytest.mark.asyncio
async def test_remote_submit_proxies_status_and_body(tmp_path) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert json.loads(request.content) == {"topic": "AI tools"}
        return httpx.Response(202, json={"status": "queued", "id": "job-1"})

    launcher = RemoteJobLauncher(_settings(tmp_path, backend_url="http://runner.test"), transport=httpx.MockTransport(_handler))

    assert await launcher.submit("AI tools") == {
        "ok": True,
        "status": 202,
        "data": {"status": "queued", "id": "job-1"},
    }
