"""Artifact builds: source trees, reproducible packing and the registry."""

from __future__ import annotations

from shipgate.build.builder import (
    ArtifactBuilder,
    BuildBackend,
    ReproducibleTarballBackend,
)
from shipgate.build.registry import (
    ArtifactRegistry,
    LocalArtifactRegistry,
    content_digest,
)
from shipgate.build.source import LocalSourceTree, SourceTree

__all__: list[str] = [
    "ArtifactBuilder",
    "BuildBackend",
    "ReproducibleTarballBackend",
    "ArtifactRegistry",
    "LocalArtifactRegistry",
    "content_digest",
    "LocalSourceTree",
    "SourceTree",
]
