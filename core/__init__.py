"""Core contracts and shared types for the job relay."""

from .contracts import (
    ArtifactPair,
    JobRequest,
    JobStatus,
    PostsDocument,
    ProgressSignal,
    RawLine,
    RunResult,
    StatusUpdate,
    TerminalMarker,
    TerminalOutcome,
    is_terminal_signal,
)

__all__ = [
    "ArtifactPair",
    "JobRequest",
    "JobStatus",
    "PostsDocument",
    "ProgressSignal",
    "RawLine",
    "RunResult",
    "StatusUpdate",
    "TerminalMarker",
    "TerminalOutcome",
    "is_terminal_signal",
]
