"""Per-run parameter bindings and artifact transfer collaborators."""

from pytaxis.store.artifacts import (
    ArtifactError,
    ArtifactTransfer,
    InMemoryArtifactTransfer,
    LocalFileArtifactTransfer,
)
from pytaxis.store.parameters import ParameterStore

__all__ = [
    "ParameterStore",
    "ArtifactTransfer",
    "ArtifactError",
    "InMemoryArtifactTransfer",
    "LocalFileArtifactTransfer",
]
