"""ScanRunner: run one external tool against one target.

The runner invokes the tool's command with a per-task timeout, stores the
raw report, and normalizes the output through the task's adapter into a
ScanResult. A crash, timeout, cancellation or unparsable output becomes a
ScanResult with status tool_error; run() never raises, so one misbehaving
tool cannot abort the batch.

Timeout handling follows the usual escalation: SIGTERM first, then SIGKILL
after a grace period.

Example:
    >>> runner = ScanRunner(report_store=FileReportStore(".shipgate/reports"))
    >>> result = runner.run(task, target)
    >>> result.status
    <ScanStatus.SUCCESS: 'success'>
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Mapping
from typing import NamedTuple, Protocol

import structlog

from shipgate.errors import ToolExecutionError
from shipgate.scanning.adapters import ADAPTERS, FindingsAdapter
from shipgate.scanning.storage import MemoryReportStore, ReportStore
from shipgate.schemas.scan import (
    ScanResult,
    ScanStatus,
    ScanTarget,
    ScanTask,
    SeverityHistogram,
)
from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
"""Seconds to wait after SIGTERM before SIGKILL."""

CANCEL_POLL_SECONDS = 0.2
"""How often a running tool checks its cancel event."""


class ToolOutput(NamedTuple):
    """Exit status and captured output of one tool invocation."""

    exit_code: int
    stdout: str
    stderr: str


class ToolInvoker(Protocol):
    """Runs a tool command and captures its output."""

    def invoke(
        self,
        argv: list[str],
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> ToolOutput:
        """Run the command.

        Raises:
            ToolExecutionError: On launch failure, timeout or cancellation.
        """
        ...


class CommandInvoker:
    """Runs tools as subprocesses (no shell)."""

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        terminate_grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.env = dict(env) if env is not None else None
        self.cwd = cwd
        self.terminate_grace_seconds = terminate_grace_seconds

    def invoke(
        self,
        argv: list[str],
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> ToolOutput:
        tool = argv[0]
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as e:
            raise ToolExecutionError(tool, f"failed to start: {e}") from e

        deadline = time.monotonic() + timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._terminate(proc)
                raise ToolExecutionError(
                    tool,
                    f"timed out after {timeout_seconds}s",
                    timed_out=True,
                )
            try:
                # communicate() may be retried after TimeoutExpired without losing output
                stdout, stderr = proc.communicate(timeout=min(CANCEL_POLL_SECONDS, remaining))
                return ToolOutput(proc.returncode, stdout or "", stderr or "")
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    self._terminate(proc)
                    raise ToolExecutionError(tool, "cancelled", cancelled=True) from None

    def _terminate(self, proc: subprocess.Popen[str]) -> None:
        proc.terminate()
        try:
            proc.communicate(timeout=self.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()


class ScanRunner:
    """Invokes one tool per call and returns a normalized ScanResult.

    Attributes:
        adapters: Adapters keyed by report format.
        invoker: How tools are executed.
        report_store: Where raw reports are written.
    """

    def __init__(
        self,
        *,
        adapters: Mapping[str, FindingsAdapter] | None = None,
        invoker: ToolInvoker | None = None,
        report_store: ReportStore | None = None,
    ) -> None:
        self.adapters = dict(adapters) if adapters is not None else dict(ADAPTERS)
        self.invoker = invoker or CommandInvoker()
        self.report_store = report_store or MemoryReportStore()

    def run(
        self,
        task: ScanTask,
        target: ScanTarget,
        cancel_event: threading.Event | None = None,
    ) -> ScanResult:
        """Run one task against one target. Never raises.

        Args:
            task: The task to run.
            target: What to scan.
            cancel_event: When set, the running tool is terminated.

        Returns:
            ScanResult with status success, findings or tool_error.
        """
        log = logger.bind(task_id=task.task_id, tool=task.tool, target=target.ref)
        with create_span(
            f"shipgate.scan.{task.task_id}",
            attributes={
                "task_id": task.task_id,
                "tool": task.tool,
                "required": task.required,
                "timeout_seconds": task.timeout_seconds,
            },
        ) as span:
            start_time = time.monotonic()
            raw_report_ref: str | None = None
            raw_digest: str | None = None

            def _elapsed_ms() -> int:
                return int((time.monotonic() - start_time) * 1000)

            try:
                if cancel_event is not None and cancel_event.is_set():
                    raise ToolExecutionError(task.tool, "cancelled", cancelled=True)

                adapter = self.adapters.get(task.report_format)
                if adapter is None:
                    raise ToolExecutionError(
                        task.tool, f"no adapter for report format {task.report_format!r}"
                    )

                argv = task.render_command(target.ref)
                log.info("scan_started", timeout_seconds=task.timeout_seconds)
                output = self.invoker.invoke(argv, task.timeout_seconds, cancel_event)

                if output.stdout:
                    raw_report_ref, raw_digest = self._store(task, target, output.stdout)

                accepted = (
                    frozenset(task.accepted_exit_codes)
                    if task.accepted_exit_codes is not None
                    else adapter.accepted_exit_codes
                )
                if output.exit_code not in accepted:
                    stderr = output.stderr.strip()[:500] if output.stderr else "no error output"
                    raise ToolExecutionError(
                        task.tool, f"exit code {output.exit_code}: {stderr}"
                    )

                findings = adapter.parse(output.stdout, output.exit_code)

            except ToolExecutionError as e:
                duration_ms = _elapsed_ms()
                error = sanitize_error_message(str(e))
                log.warning(
                    "scan_tool_error",
                    error=error,
                    timed_out=e.timed_out,
                    cancelled=e.cancelled,
                    duration_ms=duration_ms,
                )
                span.set_attribute("status", ScanStatus.TOOL_ERROR.value)
                return self._tool_error(task, target, error, duration_ms, raw_report_ref, raw_digest)

            except Exception as e:
                duration_ms = _elapsed_ms()
                error = sanitize_error_message(f"unexpected error: {e}")
                log.error("scan_unexpected_error", error=error, duration_ms=duration_ms)
                span.set_attribute("status", ScanStatus.TOOL_ERROR.value)
                return self._tool_error(task, target, error, duration_ms, raw_report_ref, raw_digest)

            duration_ms = _elapsed_ms()
            if findings:
                status = ScanStatus.FINDINGS
                histogram: SeverityHistogram | None = SeverityHistogram.from_findings(findings)
            else:
                status = ScanStatus.SUCCESS
                histogram = None

            log.info(
                "scan_completed",
                status=status.value,
                findings=len(findings),
                histogram=str(histogram) if histogram else None,
                duration_ms=duration_ms,
            )
            span.set_attribute("status", status.value)
            span.set_attribute("finding_count", len(findings))
            span.set_attribute("duration_ms", duration_ms)

            return ScanResult(
                task_id=task.task_id,
                tool=task.tool,
                target_digest=target.digest,
                status=status,
                histogram=histogram,
                findings=findings,
                raw_report_ref=raw_report_ref,
                report_digest=raw_digest,
                duration_ms=duration_ms,
            )

    def _store(
        self, task: ScanTask, target: ScanTarget, stdout: str
    ) -> tuple[str | None, str | None]:
        try:
            stored = self.report_store.put(task.task_id, target.digest, stdout.encode())
        except Exception as e:
            logger.warning(
                "scan_report_store_failed",
                task_id=task.task_id,
                error=sanitize_error_message(str(e)),
            )
            return None, None
        return stored.ref, stored.digest

    @staticmethod
    def _tool_error(
        task: ScanTask,
        target: ScanTarget,
        error: str,
        duration_ms: int,
        raw_report_ref: str | None,
        raw_digest: str | None,
    ) -> ScanResult:
        return ScanResult(
            task_id=task.task_id,
            tool=task.tool,
            target_digest=target.digest,
            status=ScanStatus.TOOL_ERROR,
            error=error,
            raw_report_ref=raw_report_ref,
            report_digest=raw_digest,
            duration_ms=duration_ms,
        )


__all__: list[str] = [
    "TERMINATE_GRACE_SECONDS",
    "ToolOutput",
    "ToolInvoker",
    "CommandInvoker",
    "ScanRunner",
]
