"""
Artifact Aggregator
Fetches the job's content and report artifacts from disk or from a file endpoint.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path
import re
from typing import Optional, Pattern, Tuple
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core import ArtifactPair
from utils.exceptions import ArtifactError, InvalidArtifactName


logger = logging.getLogger(__name__)

ARTIFACT_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+\.(md|json|txt)$")
MARKDOWN_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+\.md$")

CONTENT_TYPES = {
    "md": "text/markdown; charset=utf-8",
    "json": "application/json; charset=utf-8",
    "txt": "text/plain; charset=utf-8",
}

DEFAULT_CONTENT_ARTIFACT = "social_posts.json"
DEFAULT_REPORT_ARTIFACT = "analytics_summary.md"


def validate_artifact_name(name: str, pattern: Pattern[str] = ARTIFACT_NAME_RE) -> str:
    """Reject, never sanitize: the name must match the filename contract as given."""
    text = str(name or "")
    if not pattern.match(text):
        raise InvalidArtifactName("Invalid filename", name=text)
    return text


def content_type_for(name: str) -> str:
    extension = str(name or "").rsplit(".", 1)[-1].lower()
    return CONTENT_TYPES.get(extension, "application/octet-stream")


class ArtifactSource(ABC):
    """Where artifacts live. ``read`` raises ``ArtifactError`` on any miss."""

    @abstractmethod
    async def read(self, name: str) -> str:
        pass


class LocalArtifactSource(ArtifactSource):
    """Artifacts written by a local job into its working directory."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)

    def path_for(self, name: str) -> Path:
        return self.root_dir / validate_artifact_name(name)

    async def read(self, name: str) -> str:
        path = self.path_for(name)
        if not path.is_file():
            raise ArtifactError("Not found", name=name, status=404)
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, ValueError) as exc:
            raise ArtifactError(f"Failed to read file: {exc}", name=name) from exc


class HttpArtifactSource(ArtifactSource):
    """Artifacts served over ``GET {base_url}/file/<name>``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        retries: int = 3,
        path_prefix: str = "/file",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout = timeout
        self.retries = max(1, int(retries))
        self.path_prefix = path_prefix
        self._transport = transport

    def url_for(self, name: str) -> str:
        return f"{self.base_url}{self.path_prefix}/{quote(validate_artifact_name(name))}"

    async def read(self, name: str) -> str:
        url = self.url_for(name)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.retries),
                    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                    retry=retry_if_exception_type(httpx.TransportError),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.get(url)
            except httpx.HTTPError as exc:
                raise ArtifactError(f"{name} fetch failed: {exc}", name=name) from exc

        if not response.is_success:
            detail = response.text.strip() or "Unknown error"
            raise ArtifactError(f"{name}: {response.status_code} - {detail}", name=name, status=response.status_code)
        return response.text


class ArtifactAggregator:
    """Fetches the content/report pair; a failure on one half never blocks the other."""

    def __init__(self, source: ArtifactSource) -> None:
        self.source = source

    async def fetch(
        self,
        content_name: str = DEFAULT_CONTENT_ARTIFACT,
        report_name: str = DEFAULT_REPORT_ARTIFACT,
    ) -> ArtifactPair:
        (content, content_error), (report, report_error) = await asyncio.gather(
            self._fetch_one(content_name),
            self._fetch_one(report_name),
        )
        errors = {}
        if content_error:
            errors[content_name] = content_error
        if report_error:
            errors[report_name] = report_error
        return ArtifactPair(content=content, report=report, errors=errors)

    async def _fetch_one(self, name: str) -> Tuple[Optional[str], Optional[str]]:
        try:
            return await self.source.read(name), None
        except ArtifactError as exc:
            logger.warning(f"Artifact {name} unavailable: {exc.message}")
            return None, exc.message
        except (httpx.HTTPError, OSError, ValueError) as exc:
            logger.warning(f"Artifact {name} fetch failed: {exc}")
            return None, f"{name} fetch failed: {exc}"
