"""Shared runtime singletons for web/CLI entrypoints."""

from __future__ import annotations

from orchestrator.registry import ActiveJobRegistry


_REGISTRY = ActiveJobRegistry()


def get_registry() -> ActiveJobRegistry:
    return _REGISTRY
