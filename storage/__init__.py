"""
Storage Module
Artifact retrieval for finished jobs
"""
from .artifacts import (
    ARTIFACT_NAME_RE,
    MARKDOWN_NAME_RE,
    ArtifactAggregator,
    ArtifactSource,
    HttpArtifactSource,
    LocalArtifactSource,
    content_type_for,
    validate_artifact_name,
)

__all__ = [
    "ARTIFACT_NAME_RE",
    "MARKDOWN_NAME_RE",
    "ArtifactAggregator",
    "ArtifactSource",
    "HttpArtifactSource",
    "LocalArtifactSource",
    "content_type_for",
    "validate_artifact_name",
]
