"""Durable storage for raw scanner reports.

ScanRunner writes every raw report here before normalizing it; the
resulting reference and digest travel on the ScanResult so that findings
can always be traced back to the tool's own output.
"""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import NamedTuple, Protocol

import structlog

logger = structlog.get_logger(__name__)


class StoredReport(NamedTuple):
    """Location and digest of a stored raw report."""

    ref: str
    digest: str


def report_digest(content: bytes) -> str:
    """sha256 digest of raw report bytes."""
    return "sha256:" + hashlib.sha256(content).hexdigest()


class ReportStore(Protocol):
    """Storage for raw scanner reports."""

    def put(self, task_id: str, target_digest: str, content: bytes) -> StoredReport:
        """Store a raw report and return its reference."""
        ...

    def get(self, ref: str) -> bytes:
        """Read a stored report back."""
        ...


class FileReportStore:
    """Content-addressed report store on the local filesystem.

    Layout: ``<root>/<target digest hex>/<task_id>/<report digest hex>.raw``.
    Writing identical content twice is a no-op.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def put(self, task_id: str, target_digest: str, content: bytes) -> StoredReport:
        digest = report_digest(content)
        directory = self.root / target_digest.split(":", 1)[-1] / task_id
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{digest.split(':', 1)[1]}.raw"
        if not path.exists():
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(content)
            tmp.replace(path)
        logger.debug("report_stored", task_id=task_id, path=str(path), size=len(content))
        return StoredReport(ref=path.resolve().as_uri(), digest=digest)

    def get(self, ref: str) -> bytes:
        prefix = "file://"
        if not ref.startswith(prefix):
            raise ValueError(f"Not a file report reference: {ref}")
        return Path(ref[len(prefix):]).read_bytes()


class MemoryReportStore:
    """In-process report store, used for dry runs and tests."""

    def __init__(self) -> None:
        self._reports: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, task_id: str, target_digest: str, content: bytes) -> StoredReport:
        digest = report_digest(content)
        ref = f"memory://{target_digest}/{task_id}/{digest}"
        with self._lock:
            self._reports[ref] = content
        return StoredReport(ref=ref, digest=digest)

    def get(self, ref: str) -> bytes:
        with self._lock:
            return self._reports[ref]

    def __len__(self) -> int:
        with self._lock:
            return len(self._reports)


__all__: list[str] = [
    "StoredReport",
    "report_digest",
    "ReportStore",
    "FileReportStore",
    "MemoryReportStore",
]
