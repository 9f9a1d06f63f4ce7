"""
Configuration Module
Relay settings loaded from the environment
"""
from .settings import RelaySettings, get_settings

__all__ = [
    "RelaySettings",
    "get_settings",
]
