"""Artifact registries: content-addressed storage for built artifacts.

Directory layout of LocalArtifactRegistry::

    <directory>/
        blobs/sha256/<hex>                 # artifact content
        manifests/<service>/<version>.json # Artifact metadata
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Protocol

import structlog

from shipgate.schemas.release import Artifact

logger = structlog.get_logger(__name__)


def content_digest(content: bytes) -> str:
    """``sha256:<hex>`` digest of content."""
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


class ArtifactRegistry(Protocol):
    """Where artifacts are pushed. Content is addressed by digest."""

    def push(self, artifact: Artifact, content: bytes) -> str:
        """Store content and return the digest the registry computed."""
        ...

    def pull(self, digest: str) -> bytes:
        """Return the content stored under digest."""
        ...

    def reference(self, digest: str) -> str:
        """Address image scanners use to reach the artifact."""
        ...


class LocalArtifactRegistry:
    """Content-addressed registry in a local directory."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _blob_path(self, digest: str) -> Path:
        algorithm, _, hex_digest = digest.partition(":")
        if algorithm != "sha256" or not hex_digest:
            raise ValueError(f"Unsupported digest: {digest}")
        return self.directory / "blobs" / algorithm / hex_digest

    def push(self, artifact: Artifact, content: bytes) -> str:
        digest = content_digest(content)
        blob = self._blob_path(digest)
        if not blob.exists():
            blob.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(blob, content)

        manifest = self.directory / "manifests" / artifact.service / f"{artifact.version_tag}.json"
        manifest.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(manifest, artifact.model_dump_json(indent=2).encode("utf-8"))

        logger.debug(
            "artifact_pushed",
            service=artifact.service,
            digest=digest,
            size_bytes=len(content),
        )
        return digest

    def pull(self, digest: str) -> bytes:
        blob = self._blob_path(digest)
        if not blob.exists():
            raise FileNotFoundError(f"Artifact not found: {digest}")
        content = blob.read_bytes()
        if content_digest(content) != digest:
            raise ValueError(f"Stored content does not match digest {digest}")
        return content

    def reference(self, digest: str) -> str:
        return str(self._blob_path(digest))


def _atomic_write(path: Path, content: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


__all__: list[str] = ["content_digest", "ArtifactRegistry", "LocalArtifactRegistry"]
