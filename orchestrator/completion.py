"""Write-once latch separating deliberate stream teardown from a dropped transport."""

from __future__ import annotations

from threading import Lock

from core import ProgressSignal, is_terminal_signal


class CompletionTracker:
    """Set once when a terminal signal is observed; later writes are no-ops."""

    def __init__(self) -> None:
        self._latched = False
        self._lock = Lock()

    @property
    def latched(self) -> bool:
        return self._latched

    def latch(self) -> bool:
        """Latch the tracker. Returns True only for the call that flipped it."""
        with self._lock:
            if self._latched:
                return False
            self._latched = True
            return True

    def observe(self, signal: ProgressSignal) -> bool:
        if is_terminal_signal(signal):
            return self.latch()
        return False

    def should_report_transport_error(self) -> bool:
        """A transport error is user-visible only before completion."""
        return not self._latched
