"""Relay web app: FastAPI + SSE job stream, job submission and artifact files."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

from fastapi import Body, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
import httpx
from pydantic import BaseModel, field_validator

from config import RelaySettings, get_settings
from core import JobRequest
from orchestrator.events import SSE_HEADERS, SSE_MEDIA_TYPE, format_event
from orchestrator.launcher import JobHandle, LocalJobLauncher, RemoteJobLauncher, prepare_environment, select_launcher
from orchestrator.registry import ActiveJobRegistry
from storage.artifacts import MARKDOWN_NAME_RE, LocalArtifactSource, content_type_for, validate_artifact_name
from utils.exceptions import ArtifactError, InvalidArtifactName, LaunchError
from webapp.runtime import get_registry


logger = logging.getLogger(__name__)

_HOP_BY_HOP_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "transfer-encoding",
}


app = FastAPI(title="SocialCrew Relay")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


class RunPayload(BaseModel):
    topic: Optional[str] = None

    @field_validator("topic", mode="before")
    @classmethod
    def _optional_topic(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return text or None


def _upstream_client(settings: RelaySettings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.request_timeout)


def _client_key(request: Request, client_id: Optional[str]) -> str:
    text = str(client_id or "").strip()
    if text:
        return text
    return request.client.host if request.client else "anonymous"


async def _single_frame(frame: str) -> AsyncIterator[bytes]:
    yield frame.encode("utf-8")


def _event_stream_response(body: AsyncIterator[bytes], status_code: int = 200) -> StreamingResponse:
    return StreamingResponse(body, status_code=status_code, media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)


async def _relay_frames(handle: JobHandle, registry: ActiveJobRegistry, client_key: str) -> AsyncIterator[bytes]:
    try:
        async for frame in handle.iter_frames():
            yield frame
    finally:
        # a disconnect detaches; the job itself keeps running
        await handle.close()
        if handle.finished:
            await registry.discard(client_key, handle)


@app.get("/health")
async def health() -> Dict[str, Any]:
    settings = get_settings()
    return {
        "ok": True,
        "mode": "remote" if settings.remote_mode else "local",
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


@app.get("/run")
async def stream_run(request: Request, topic: Optional[str] = None, client_id: Optional[str] = None) -> StreamingResponse:
    settings = get_settings()
    job = JobRequest(topic=topic)
    launcher = select_launcher(settings)
    environment = prepare_environment(settings) if isinstance(launcher, LocalJobLauncher) else {}

    try:
        handle = await launcher.launch(job.topic, environment)
    except LaunchError as exc:
        logger.error(f"Launch failed: {exc}")
        return _event_stream_response(_single_frame(format_event("error", exc.message)))

    registry = get_registry()
    key = _client_key(request, client_id)
    await registry.replace(key, handle)
    return _event_stream_response(_relay_frames(handle, registry, key), status_code=handle.status_code)


@app.post("/run")
async def submit_run(
    request: Request,
    payload: Optional[RunPayload] = Body(default=None),
    topic: Optional[str] = None,
    client_id: Optional[str] = None,
) -> JSONResponse:
    settings = get_settings()
    job = JobRequest(topic=(payload.topic if payload and payload.topic else topic))
    launcher = select_launcher(settings)

    try:
        if isinstance(launcher, RemoteJobLauncher):
            result = await launcher.submit(job.topic)
            return JSONResponse(result, status_code=result["status"])

        handle = await launcher.launch(job.topic, prepare_environment(settings))
        registry = get_registry()
        key = _client_key(request, client_id)
        # the previous job is stopped before the new one spawns
        await registry.replace(key, handle)
        try:
            note = await handle.start()
        except LaunchError:
            await registry.discard(key, handle)
            raise
        # detached: output is drained and dropped, artifacts are polled later
        await handle.close()
    except LaunchError as exc:
        logger.error(f"Job submission failed: {exc}")
        return JSONResponse({"ok": False, "error": exc.message}, status_code=500)

    return JSONResponse(
        {"ok": True, "status": 202, "data": {"status": "started", "detail": note}},
        status_code=202,
    )


@app.get("/file/{name}")
async def get_file(name: str) -> Response:
    try:
        validate_artifact_name(name)
    except InvalidArtifactName:
        return JSONResponse({"error": "Invalid filename"}, status_code=400)

    settings = get_settings()
    if settings.remote_mode:
        target = f"{settings.backend_url}/file/{quote(name)}"
        try:
            async with _upstream_client(settings) as client:
                upstream = await client.get(target)
        except httpx.HTTPError as exc:
            logger.error(f"File proxy failed for {target}: {exc}")
            return JSONResponse({"error": "Failed to read file"}, status_code=500)

        headers = {key: value for key, value in upstream.headers.items() if key.lower() not in _HOP_BY_HOP_HEADERS}
        headers.setdefault("content-type", content_type_for(name))
        return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)

    return await _serve_local(settings, name)


@app.get("/md/{name}")
async def get_markdown(name: str) -> Response:
    try:
        validate_artifact_name(name, MARKDOWN_NAME_RE)
    except InvalidArtifactName:
        return JSONResponse({"error": "Invalid filename"}, status_code=400)
    return await _serve_local(get_settings(), name)


async def _serve_local(settings: RelaySettings, name: str) -> Response:
    source = LocalArtifactSource(settings.backend_dir)
    try:
        content = await source.read(name)
    except ArtifactError as exc:
        if exc.details.get("status") == 404:
            return JSONResponse({"error": "Not found"}, status_code=404)
        logger.error(f"Failed to read {name}: {exc}")
        return JSONResponse({"error": "Failed to read file"}, status_code=500)
    return Response(content=content, media_type=content_type_for(name))
