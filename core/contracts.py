"""Canonical data contracts for job runs, progress signals and artifacts."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


PostsDocument = Dict[str, List[Dict[str, Any]]]


class JobStatus(str, Enum):
    """Status values carried by inline status messages."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TerminalOutcome(str, Enum):
    """Named terminal events of the local-process framing."""

    DONE = "done"
    ERROR = "error"


class JobRequest(BaseModel):
    """Request to start one generation job."""

    topic: Optional[str] = None

    @field_validator("topic", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return text or None


class RawLine(BaseModel):
    """One unstructured log line from the job."""

    kind: Literal["line"] = "line"
    text: str


class StatusUpdate(BaseModel):
    """Structured status message, framed as inline JSON."""

    kind: Literal["status"] = "status"
    status: str
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED.value


class TerminalMarker(BaseModel):
    """Named terminal event: ``done`` with an exit code or ``error`` with a message."""

    kind: Literal["terminal"] = "terminal"
    outcome: TerminalOutcome
    code: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return True

    @property
    def succeeded(self) -> bool:
        return self.outcome == TerminalOutcome.DONE and self.code in (None, 0)


ProgressSignal = Union[RawLine, StatusUpdate, TerminalMarker]


def is_terminal_signal(signal: ProgressSignal) -> bool:
    return isinstance(signal, (StatusUpdate, TerminalMarker)) and signal.is_terminal


class ArtifactPair(BaseModel):
    """Content and report artifacts; each half is independently optional."""

    content: Optional[str] = None
    report: Optional[str] = None
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.content is None and self.report is None


class RunResult(BaseModel):
    """Display-ready outcome of one client-initiated run."""

    topic: Optional[str] = None
    completed: bool = False
    exit_code: Optional[int] = None
    posts: Optional[PostsDocument] = None
    content_raw: Optional[str] = None
    content_display: Optional[str] = None
    report: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def platforms(self) -> List[str]:
        return list((self.posts or {}).keys())
