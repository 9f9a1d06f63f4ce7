"""Job orchestration: environment, launch strategies, event framing and completion tracking."""

from .completion import CompletionTracker
from .environment import read_overrides, resolve_environment
from .events import (
    EventStreamEncoder,
    SSEDecoder,
    SSEMessage,
    classify_message,
    encode_signal,
    format_data,
    format_event,
    format_status,
)
from .launcher import (
    JobHandle,
    JobLauncher,
    LocalJobHandle,
    LocalJobLauncher,
    RemoteJobHandle,
    RemoteJobLauncher,
    prepare_environment,
    select_launcher,
)
from .registry import ActiveJobRegistry

__all__ = [
    "ActiveJobRegistry",
    "CompletionTracker",
    "EventStreamEncoder",
    "JobHandle",
    "JobLauncher",
    "LocalJobHandle",
    "LocalJobLauncher",
    "RemoteJobHandle",
    "RemoteJobLauncher",
    "SSEDecoder",
    "SSEMessage",
    "classify_message",
    "encode_signal",
    "format_data",
    "format_event",
    "format_status",
    "prepare_environment",
    "read_overrides",
    "resolve_environment",
    "select_launcher",
]
