"""
Utils Module
Logging and error types
"""
from .logger import console, setup_logger, setup_relay_logging
from .exceptions import (
    RelayError,
    ConfigurationError,
    LaunchError,
    NoRunnableBackendError,
    ArtifactError,
    InvalidArtifactName,
    StreamError,
)

__all__ = [
    "console",
    "setup_logger",
    "setup_relay_logging",
    "RelayError",
    "ConfigurationError",
    "LaunchError",
    "NoRunnableBackendError",
    "ArtifactError",
    "InvalidArtifactName",
    "StreamError",
]
