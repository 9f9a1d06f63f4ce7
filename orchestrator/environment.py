"""Environment resolution for job launches: .env overrides merged over the process environment."""

from __future__ import annotations

import io
import logging
import os
from pathlib import Path
import re
from typing import Dict, IO, Mapping, Optional, Union

from dotenv.parser import parse_stream


logger = logging.getLogger(__name__)

EnvSource = Union[str, Path, IO[str]]

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _collect(stream: IO[str]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for binding in parse_stream(stream):
        # bare `KEY` lines and unparsable lines leave earlier values alone
        if binding.error or binding.key is None or binding.value is None:
            continue
        if not _KEY_RE.match(binding.key):
            continue
        overrides[binding.key] = binding.value
    return overrides


def read_overrides(source: Optional[EnvSource]) -> Dict[str, str]:
    """Parse ``key=value`` lines; malformed lines and unreadable sources yield nothing."""
    if source is None:
        return {}

    try:
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not path.is_file():
                return {}
            with path.open(encoding="utf-8") as handle:
                return _collect(handle)
        return _collect(source)
    except (OSError, ValueError) as exc:
        logger.warning(f"Ignoring unreadable env source {source!r}: {exc}")
        return {}


def resolve_environment(
    base: Optional[Mapping[str, str]] = None,
    source: Optional[EnvSource] = None,
) -> Dict[str, str]:
    """
    Merge overrides from ``source`` over ``base``.

    ``base`` defaults to ``os.environ``. Surrounding quotes in override values
    are stripped and a missing source leaves the base untouched. Never raises.
    """
    merged = dict(os.environ if base is None else base)
    merged.update(read_overrides(source))
    return merged


def resolve_environment_text(text: str, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    return resolve_environment(base, io.StringIO(text or ""))
