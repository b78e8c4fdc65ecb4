"""VulnerabilityReporter: push normalized findings to a vulnerability sink.

Reporting is a side channel. Uploads are retried with bounded exponential
backoff and every failure is logged and swallowed, so the gate never waits
on or fails because of the sink.

Each result is uploaded as one batch keyed by (task id, target digest) and
de-duplicated on (task id, target digest, report digest): a pipeline retry
that produces the same raw report does not report it twice, while a key
that failed to upload stays eligible for a later attempt.

Example:
    >>> reporter = VulnerabilityReporter(HttpVulnerabilitySink(config.reporting))
    >>> reporter.submit(results)   # fire-and-forget
    >>> reporter.close()
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from shipgate.errors import ReportingFailureError
from shipgate.resilience import RetryPolicy
from shipgate.schemas.config import HttpEndpointConfig
from shipgate.schemas.scan import Finding, ScanResult, ScanStatus, SeverityHistogram
from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

ReportKey = tuple[str, str, str]


class FindingsBatch(BaseModel):
    """Upload payload for one scan result."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str
    tool: str
    target_digest: str
    status: ScanStatus
    report_digest: str | None = None
    raw_report_ref: str | None = None
    histogram: SeverityHistogram | None = None
    findings: list[Finding] = Field(default_factory=list)

    @property
    def batch_key(self) -> str:
        """Sink idempotency key: ``<task_id>@<target digest>``."""
        return f"{self.task_id}@{self.target_digest}"

    @classmethod
    def from_result(cls, result: ScanResult) -> FindingsBatch:
        return cls(
            task_id=result.task_id,
            tool=result.tool,
            target_digest=result.target_digest,
            status=result.status,
            report_digest=result.report_digest,
            raw_report_ref=result.raw_report_ref,
            histogram=result.histogram,
            findings=list(result.findings),
        )


class VulnerabilitySink(Protocol):
    """External vulnerability-management system. Idempotent on replay."""

    def upload(self, batch: FindingsBatch) -> None:
        """Upload one batch; raise on failure."""
        ...


class HttpVulnerabilitySink:
    """Posts batches as JSON with an Idempotency-Key header."""

    def __init__(
        self,
        config: HttpEndpointConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.Client(
            timeout=config.timeout_seconds,
            headers=config.headers,
            transport=transport,
        )

    def upload(self, batch: FindingsBatch) -> None:
        response = self._client.post(
            self.config.url,
            json=batch.model_dump(mode="json"),
            headers={"Idempotency-Key": batch.batch_key},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def report_key(result: ScanResult) -> ReportKey:
    """De-duplication key of a result."""
    return (result.task_id, result.target_digest, result.report_digest or "")


class VulnerabilityReporter:
    """Best-effort publisher of scan results.

    Attributes:
        sink: Where batches are uploaded.
        retry_policy: Backoff for failed uploads.
    """

    def __init__(
        self,
        sink: VulnerabilitySink,
        *,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 2,
    ) -> None:
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy()
        self._published: set[ReportKey] = set()
        self._inflight: set[ReportKey] = set()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="shipgate-report",
        )

    def publish(self, results: Iterable[ScanResult]) -> None:
        """Upload every new result. Never raises.

        Tool errors carry no normalized findings and are not uploaded.
        """
        pending = self._claim(results)
        if not pending:
            return

        with create_span(
            "shipgate.report.publish",
            attributes={"batch_count": len(pending)},
        ) as span:
            delivered = 0
            for key, result in pending:
                try:
                    self._upload(FindingsBatch.from_result(result))
                except ReportingFailureError as e:
                    logger.error(
                        "reporting_failed",
                        batch_key=e.batch_key,
                        error=e.reason,
                    )
                    self._release(key, published=False)
                    continue
                self._release(key, published=True)
                delivered += 1
            span.set_attribute("delivered", delivered)
            logger.info("reporting_completed", delivered=delivered, total=len(pending))

    def submit(self, results: Iterable[ScanResult]) -> Future[None]:
        """Publish in the background and return immediately."""
        return self._executor.submit(self.publish, list(results))

    def close(self, wait: bool = True) -> None:
        """Stop accepting submissions, optionally draining pending ones."""
        self._executor.shutdown(wait=wait)

    def is_published(self, result: ScanResult) -> bool:
        with self._lock:
            return report_key(result) in self._published

    def _claim(self, results: Iterable[ScanResult]) -> list[tuple[ReportKey, ScanResult]]:
        claimed: list[tuple[ReportKey, ScanResult]] = []
        with self._lock:
            for result in results:
                if result.status == ScanStatus.TOOL_ERROR:
                    continue
                key = report_key(result)
                if key in self._published or key in self._inflight:
                    logger.debug("reporting_duplicate_skipped", task_id=result.task_id)
                    continue
                self._inflight.add(key)
                claimed.append((key, result))
        return claimed

    def _release(self, key: ReportKey, *, published: bool) -> None:
        with self._lock:
            self._inflight.discard(key)
            if published:
                self._published.add(key)

    def _upload(self, batch: FindingsBatch) -> None:
        try:
            self.retry_policy.call(
                lambda: self.sink.upload(batch),
                operation="vulnerability_upload",
            )
        except Exception as e:
            raise ReportingFailureError(
                batch.batch_key, sanitize_error_message(str(e))
            ) from e


__all__: list[str] = [
    "FindingsBatch",
    "VulnerabilitySink",
    "HttpVulnerabilitySink",
    "VulnerabilityReporter",
    "report_key",
]
