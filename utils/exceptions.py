"""
Custom Exceptions
Error taxonomy for the job relay
"""


class RelayError(Exception):
    """Base error for the job relay."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RelayError):
    """Invalid configuration value."""
    pass


class LaunchError(RelayError):
    """The generation job could not be started."""

    def __init__(self, message: str, mode: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.mode = mode


class NoRunnableBackendError(LaunchError):
    """Every local launch candidate failed to start."""

    def __init__(self, message: str, attempted: list = None, **kwargs):
        super().__init__(message, mode="local", attempted=list(attempted or []), **kwargs)
        self.attempted = list(attempted or [])


class ArtifactError(RelayError):
    """An artifact could not be fetched."""

    def __init__(self, message: str, name: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.name = name


class InvalidArtifactName(ArtifactError):
    """Artifact name rejected by the filename contract."""
    pass


class StreamError(RelayError):
    """The progress stream dropped before a terminal signal."""
    pass
