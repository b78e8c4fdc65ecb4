"""ArtifactBuilder: deterministic, content-addressed builds and image scans.

A build packs the service source tree into a reproducible tarball, pushes
it to the artifact registry and verifies the digest round-trip. The digest
is the artifact's identity from then on: the image scans, the ReleaseGate
and the rollout all refer to it.

Example:
    >>> builder = ArtifactBuilder(LocalArtifactRegistry(".shipgate/registry"), aggregator)
    >>> artifact = builder.build(change, LocalSourceTree("services/checkout"))
    >>> record = builder.scan_image(artifact, pipeline.image_scans)
    >>> record.deployable
    True
"""

from __future__ import annotations

import gzip
import io
import tarfile
import threading
import time
from collections.abc import Iterable, Sequence
from typing import Protocol

import structlog

from shipgate.build.registry import ArtifactRegistry, content_digest
from shipgate.build.source import SourceTree
from shipgate.errors import BuildFailureError
from shipgate.scanning.aggregator import ScanAggregator
from shipgate.schemas.release import Artifact, ArtifactRecord, ChangeEvent
from shipgate.schemas.scan import ScanTarget, ScanTask, TargetKind
from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

FILE_MODE = 0o644


class BuildBackend(Protocol):
    """Turns a list of (path, content) pairs into artifact bytes."""

    def pack(self, files: Iterable[tuple[str, bytes]]) -> bytes:
        ...


class ReproducibleTarballBackend:
    """Gzip tarball with normalized metadata.

    Entries are sorted by path with mtime 0, uid/gid 0, empty owner names
    and a fixed mode; the gzip header carries no timestamp or filename.
    Identical inputs therefore produce byte-identical output.
    """

    def pack(self, files: Iterable[tuple[str, bytes]]) -> bytes:
        buffer = io.BytesIO()
        with gzip.GzipFile(filename="", mode="wb", fileobj=buffer, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for name, content in sorted(files, key=lambda item: item[0]):
                    info = tarfile.TarInfo(name=name)
                    info.size = len(content)
                    info.mtime = 0
                    info.mode = FILE_MODE
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    tar.addfile(info, io.BytesIO(content))
        return buffer.getvalue()


class ArtifactBuilder:
    """Builds, pushes and image-scans artifacts.

    Attributes:
        registry: Artifact registry receiving pushes.
        aggregator: ScanAggregator used for image-stage tasks.
        backend: Build backend producing the artifact bytes.
        records: ArtifactRecords by artifact digest.
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        aggregator: ScanAggregator,
        *,
        backend: BuildBackend | None = None,
    ) -> None:
        self.registry = registry
        self.aggregator = aggregator
        self.backend = backend or ReproducibleTarballBackend()
        self.records: dict[str, ArtifactRecord] = {}
        self._lock = threading.Lock()

    def build(self, change: ChangeEvent, source: SourceTree) -> Artifact:
        """Build and push the artifact for a change.

        Args:
            change: The change being released.
            source: Checked-out source tree of the service.

        Returns:
            The pushed, verified Artifact.

        Raises:
            BuildFailureError: If packing, pushing or verification fails.
        """
        log = logger.bind(service=change.service, commit_sha=change.short_sha)

        with create_span(
            "shipgate.build.artifact",
            attributes={"service": change.service, "commit_sha": change.commit_sha},
        ) as span:
            start_time = time.monotonic()
            try:
                source_digest = source.digest()
                content = self.backend.pack(source.files())
            except (OSError, tarfile.TarError) as e:
                log.error("build_failed", stage="pack", error=str(e))
                raise BuildFailureError(
                    change.service, sanitize_error_message(str(e))
                ) from e

            digest = content_digest(content)
            artifact = Artifact(
                service=change.service,
                digest=digest,
                version_tag=change.short_sha,
                source_digest=source_digest,
                commit_sha=change.commit_sha,
                size_bytes=len(content),
            )

            try:
                pushed = self.registry.push(artifact, content)
                if pushed != digest:
                    raise BuildFailureError(
                        change.service,
                        f"registry returned digest {pushed}, expected {digest}",
                    )
                if content_digest(self.registry.pull(digest)) != digest:
                    raise BuildFailureError(
                        change.service, f"pulled content does not match {digest}"
                    )
            except BuildFailureError as e:
                log.error("build_failed", stage="verify", error=e.reason)
                raise
            except (OSError, ValueError) as e:
                log.error("build_failed", stage="push", error=str(e))
                raise BuildFailureError(
                    change.service, sanitize_error_message(str(e))
                ) from e

            duration_ms = int((time.monotonic() - start_time) * 1000)
            span.set_attribute("digest", digest)
            span.set_attribute("size_bytes", len(content))
            log.info(
                "artifact_built",
                digest=digest,
                version_tag=artifact.version_tag,
                size_bytes=len(content),
                duration_ms=duration_ms,
            )
            return artifact

    def scan_image(
        self,
        artifact: Artifact,
        tasks: Sequence[ScanTask],
        cancel_event: threading.Event | None = None,
    ) -> ArtifactRecord:
        """Run the image-stage tasks against a built artifact.

        A Blocked decision leaves the record in place with deployable=False.
        """
        target = ScanTarget(
            kind=TargetKind.ARTIFACT,
            ref=self.registry.reference(artifact.digest),
            digest=artifact.digest,
        )
        results, decision = self.aggregator.evaluate(
            tasks, target, cancel_event, stage="image"
        )
        record = ArtifactRecord(
            artifact=artifact,
            image_results=list(results),
            image_decision=decision,
            deployable=decision.proceed,
        )
        with self._lock:
            self.records[artifact.digest] = record
        if not record.deployable:
            logger.warning(
                "artifact_not_deployable",
                service=artifact.service,
                digest=artifact.digest,
                reasons=[r.task_id for r in decision.reasons],
            )
        return record


__all__: list[str] = [
    "BuildBackend",
    "ReproducibleTarballBackend",
    "ArtifactBuilder",
]
