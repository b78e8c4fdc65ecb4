"""Unit tests for ScanRunner and CommandInvoker."""

from __future__ import annotations

import json
import sys
import threading
import time
from collections.abc import Callable
from typing import Any

import pytest

from shipgate.errors import ToolExecutionError
from shipgate.scanning.runner import CommandInvoker, ScanRunner, ToolOutput
from shipgate.scanning.storage import MemoryReportStore, report_digest
from shipgate.schemas.scan import ScanStatus, ScanTarget, ScanTask, Severity

TRIVY_REPORT = json.dumps(
    {
        "Results": [
            {
                "Target": "requirements.txt",
                "Vulnerabilities": [
                    {"VulnerabilityID": "CVE-2024-1", "PkgName": "a", "Severity": "HIGH"},
                    {"VulnerabilityID": "CVE-2024-2", "PkgName": "b", "Severity": "LOW"},
                ],
            }
        ]
    }
)


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class FailingStore:
    def put(self, task_id: str, target_digest: str, content: bytes) -> Any:
        raise OSError("disk full")

    def get(self, ref: str) -> bytes:
        raise KeyError(ref)


class TestScanRunner:
    """Tests for result normalization through a fake invoker."""

    @pytest.mark.requirement("scan-runner")
    def test_clean_run_is_success(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(0, '{"Results": []}', "")})
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("trivy-fs", report_format="trivy"), source_target)

        assert result.status == ScanStatus.SUCCESS
        assert result.histogram is None
        assert result.target_digest == source_target.digest
        assert invoker.calls == [["trivy-fs", "/src/checkout"]]

    @pytest.mark.requirement("scan-runner")
    def test_findings_are_normalized_and_report_stored(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        store = MemoryReportStore()
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(1, TRIVY_REPORT, "")})
        runner = ScanRunner(invoker=invoker, report_store=store)

        result = runner.run(make_task("trivy-fs", report_format="trivy"), source_target)

        assert result.status == ScanStatus.FINDINGS
        assert result.histogram is not None
        assert result.histogram.high == 1
        assert result.histogram.low == 1
        assert result.report_digest == report_digest(TRIVY_REPORT.encode())
        assert result.raw_report_ref is not None
        assert store.get(result.raw_report_ref) == TRIVY_REPORT.encode()

    @pytest.mark.requirement("scan-runner")
    def test_unaccepted_exit_code_is_tool_error(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(2, "", "database download failed")})
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("trivy-fs", report_format="trivy"), source_target)

        assert result.status == ScanStatus.TOOL_ERROR
        assert result.error is not None
        assert "exit code 2" in result.error
        assert "database download failed" in result.error

    @pytest.mark.requirement("scan-runner")
    def test_task_accepted_exit_codes_override_adapter(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"checkov": ToolOutput(3, "policy failed", "")})
        runner = ScanRunner(invoker=invoker)
        task = make_task("checkov", accepted_exit_codes=[0, 3])

        result = runner.run(task, source_target)

        assert result.status == ScanStatus.FINDINGS
        assert result.findings[0].rule_id == "exit-3"
        assert result.findings[0].severity == Severity.HIGH

    @pytest.mark.requirement("scan-runner")
    def test_unparsable_output_is_tool_error_with_report_kept(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"grype": ToolOutput(0, "<html>rate limited</html>", "")})
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("grype", report_format="grype"), source_target)

        assert result.status == ScanStatus.TOOL_ERROR
        assert result.error is not None
        assert "Invalid grype JSON" in result.error
        assert result.raw_report_ref is not None

    @pytest.mark.requirement("scan-runner")
    def test_invoker_error_is_tool_error(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker(
            {"gitleaks": ToolExecutionError("gitleaks", "timed out after 1s", timed_out=True)}
        )
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("gitleaks", report_format="gitleaks"), source_target)

        assert result.status == ScanStatus.TOOL_ERROR
        assert result.error == "gitleaks: timed out after 1s"

    @pytest.mark.requirement("scan-runner")
    def test_unexpected_exception_never_escapes(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"semgrep": RuntimeError("boom")})
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("semgrep"), source_target)

        assert result.status == ScanStatus.TOOL_ERROR
        assert result.error == "unexpected error: boom"

    @pytest.mark.requirement("scan-runner")
    def test_unknown_adapter_is_tool_error(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker()
        runner = ScanRunner(invoker=invoker)

        result = runner.run(make_task("custom", report_format="cyclonedx"), source_target)

        assert result.status == ScanStatus.TOOL_ERROR
        assert "no adapter" in (result.error or "")
        assert invoker.calls == []

    @pytest.mark.requirement("scan-runner")
    def test_cancelled_before_start(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker()
        runner = ScanRunner(invoker=invoker)
        cancel = threading.Event()
        cancel.set()

        result = runner.run(make_task("trivy-fs"), source_target, cancel)

        assert result.status == ScanStatus.TOOL_ERROR
        assert "cancelled" in (result.error or "")
        assert invoker.calls == []

    @pytest.mark.requirement("scan-runner")
    def test_store_failure_leaves_ref_unset(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(0, '{"Results": []}', "")})
        runner = ScanRunner(invoker=invoker, report_store=FailingStore())

        result = runner.run(make_task("trivy-fs", report_format="trivy"), source_target)

        assert result.status == ScanStatus.SUCCESS
        assert result.raw_report_ref is None
        assert result.report_digest is None


class TestCommandInvoker:
    """Tests for real subprocess execution."""

    @pytest.mark.requirement("scan-runner")
    def test_captures_output(self) -> None:
        output = CommandInvoker().invoke(
            _python("import sys; print('out'); print('err', file=sys.stderr); sys.exit(1)"),
            timeout_seconds=30,
        )

        assert output.exit_code == 1
        assert output.stdout.strip() == "out"
        assert output.stderr.strip() == "err"

    @pytest.mark.requirement("scan-runner")
    def test_missing_binary(self) -> None:
        with pytest.raises(ToolExecutionError, match="failed to start"):
            CommandInvoker().invoke(["shipgate-no-such-tool-xyz"], timeout_seconds=5)

    @pytest.mark.requirement("scan-runner")
    def test_timeout_terminates(self) -> None:
        invoker = CommandInvoker(terminate_grace_seconds=1.0)
        start = time.monotonic()

        with pytest.raises(ToolExecutionError) as exc_info:
            invoker.invoke(_python("import time; time.sleep(30)"), timeout_seconds=0.5)

        assert exc_info.value.timed_out is True
        assert time.monotonic() - start < 10

    @pytest.mark.requirement("scan-runner")
    def test_cancel_terminates(self) -> None:
        invoker = CommandInvoker(terminate_grace_seconds=1.0)
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        start = time.monotonic()

        with pytest.raises(ToolExecutionError) as exc_info:
            invoker.invoke(
                _python("import time; time.sleep(30)"),
                timeout_seconds=30,
                cancel_event=cancel,
            )

        assert exc_info.value.cancelled is True
        assert time.monotonic() - start < 10

    @pytest.mark.requirement("scan-runner")
    def test_runner_with_real_tool(self, source_target: ScanTarget) -> None:
        task = ScanTask(
            task_id="fake-trivy",
            tool="trivy",
            command=_python(f"print({TRIVY_REPORT!r})"),
            report_format="trivy",
        )

        result = ScanRunner().run(task, source_target)

        assert result.status == ScanStatus.FINDINGS
        assert result.histogram is not None
        assert result.histogram.total == 2
        assert result.duration_ms >= 0
