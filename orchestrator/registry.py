"""In-memory registry keeping one live job handle per client context."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Dict, Optional, Tuple

from .launcher import JobHandle


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _client_key(client_id: Optional[str]) -> str:
    return str(client_id or "").strip() or "anonymous"


class ActiveJobRegistry:
    """Tracks the latest handle per client; a new run terminates the previous one."""

    def __init__(self) -> None:
        self._handles: Dict[str, Tuple[JobHandle, datetime]] = {}
        self._lock = asyncio.Lock()

    async def replace(self, client_id: Optional[str], handle: JobHandle) -> Optional[JobHandle]:
        """Register ``handle`` after terminating the client's previous job. Returns the previous handle."""
        key = _client_key(client_id)
        async with self._lock:
            previous = self._handles.pop(key, None)
            if previous is not None:
                old_handle, started_at = previous
                logger.info(
                    f"Replacing {old_handle.mode} job for client {key} "
                    f"(started {started_at.isoformat(timespec='seconds')})"
                )
                await old_handle.terminate()
            self._prune()
            self._handles[key] = (handle, _utcnow())
            return previous[0] if previous else None

    async def discard(self, client_id: Optional[str], handle: JobHandle) -> bool:
        """Drop the client's entry only while ``handle`` is still the registered one."""
        key = _client_key(client_id)
        async with self._lock:
            entry = self._handles.get(key)
            if entry is None or entry[0] is not handle:
                return False
            del self._handles[key]
            return True

    def _prune(self) -> None:
        # detached jobs that have since exited
        for key in [key for key, (handle, _) in self._handles.items() if handle.finished]:
            del self._handles[key]

    def get(self, client_id: Optional[str]) -> Optional[JobHandle]:
        entry = self._handles.get(_client_key(client_id))
        return entry[0] if entry else None

    def size(self) -> int:
        return len(self._handles)
