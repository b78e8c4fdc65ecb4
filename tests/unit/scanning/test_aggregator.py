"""Unit tests for ScanAggregator fan-out, fan-in and classification."""

from __future__ import annotations

import itertools
import json
import threading
import time
from collections.abc import Callable
from typing import Any

import pytest

from shipgate.errors import ToolExecutionError
from shipgate.scanning.aggregator import ScanAggregator
from shipgate.scanning.runner import ScanRunner, ToolOutput
from shipgate.schemas.release import GateClassification, GateOutcome
from shipgate.schemas.scan import ScanStatus, ScanTarget, ScanTask, Severity

LEAK = json.dumps([{"RuleID": "aws-access-token", "File": "a.py", "StartLine": 1}])

ADVISORY_BEHAVIORS = list(itertools.product(("success", "findings", "tool_error"), (False, True)))


def _advisory_behavior(task_id: str, kind: str) -> ToolOutput | Exception:
    if kind == "findings":
        return ToolOutput(1, LEAK, "")
    if kind == "tool_error":
        return ToolExecutionError(task_id, "crashed")
    return ToolOutput(0, "[]", "")


def _trivy(severity: str) -> str:
    return json.dumps(
        {
            "Results": [
                {
                    "Target": "app",
                    "Vulnerabilities": [
                        {"VulnerabilityID": "CVE-1", "PkgName": "p", "Severity": severity}
                    ],
                }
            ]
        }
    )


def _delayed(output: ToolOutput, seconds: float) -> Callable[..., ToolOutput]:
    def behavior(argv: list[str], timeout: float, cancel: threading.Event | None) -> ToolOutput:
        time.sleep(seconds)
        return output

    return behavior


class TestClassification:
    """Gate classification over real runner output."""

    @pytest.mark.requirement("scan-aggregation")
    def test_all_clean_passes(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        aggregator = ScanAggregator(ScanRunner(invoker=fakes.Invoker()))
        tasks = [make_task(name) for name in ("trivy-fs", "semgrep", "gitleaks", "checkov")]

        results, decision = aggregator.evaluate(tasks, source_target)

        assert [r.task_id for r in results] == ["checkov", "gitleaks", "semgrep", "trivy-fs"]
        assert all(r.status == ScanStatus.SUCCESS for r in results)
        assert decision.outcome == GateOutcome.PROCEED
        assert decision.classification == GateClassification.PASS
        assert decision.stage == "source"

    @pytest.mark.requirement("scan-aggregation")
    def test_required_finding_above_threshold_blocks(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(1, _trivy("CRITICAL"), "")})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))
        tasks = [make_task("trivy-fs", report_format="trivy"), make_task("semgrep")]

        results, decision = aggregator.evaluate(tasks, source_target)

        assert decision.blocked
        assert decision.classification == GateClassification.HARD_FAIL
        assert [r.task_id for r in decision.reasons] == ["trivy-fs"]
        assert len(results) == 2

    @pytest.mark.requirement("scan-aggregation")
    def test_finding_below_threshold_is_soft_fail(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"trivy-fs": ToolOutput(1, _trivy("MEDIUM"), "")})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker), default_threshold=Severity.HIGH)

        _, decision = aggregator.evaluate([make_task("trivy-fs", report_format="trivy")], source_target)

        assert decision.proceed
        assert decision.classification == GateClassification.SOFT_FAIL
        assert [r.task_id for r in decision.advisories] == ["trivy-fs"]

    @pytest.mark.requirement("scan-aggregation")
    def test_fail_closed_tool_error_blocks(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"gitleaks": ToolExecutionError("gitleaks", "crashed")})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))
        tasks = [
            make_task("gitleaks", report_format="gitleaks", fail_closed=True),
            make_task("trivy-fs"),
        ]

        results, decision = aggregator.evaluate(tasks, source_target)

        assert decision.blocked
        assert decision.reasons[0].status == ScanStatus.TOOL_ERROR
        assert "gitleaks [tool_error" in decision.summary()

    @pytest.mark.requirement("scan-aggregation")
    def test_fail_open_tool_error_proceeds(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"gitleaks": ToolExecutionError("gitleaks", "crashed")})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))

        _, decision = aggregator.evaluate([make_task("gitleaks")], source_target)

        assert decision.proceed
        assert decision.classification == GateClassification.SOFT_FAIL

    @pytest.mark.requirement("scan-aggregation")
    def test_advisory_tasks_never_block(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker(
            {
                "gitleaks": ToolOutput(1, LEAK, ""),
                "trivy-fs": ToolExecutionError("trivy-fs", "crashed"),
            }
        )
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))
        tasks = [
            make_task("gitleaks", report_format="gitleaks", required=False),
            make_task("trivy-fs", required=False, fail_closed=True),
        ]

        _, decision = aggregator.evaluate(tasks, source_target)

        assert decision.proceed
        assert decision.reasons == []
        assert [r.task_id for r in decision.advisories] == ["gitleaks", "trivy-fs"]



    @pytest.mark.requirement("scan-aggregation")
    @pytest.mark.parametrize("required_blocks", [False, True], ids=["passing", "blocking"])
    @pytest.mark.parametrize(
        ("first", "second"),
        list(itertools.product(ADVISORY_BEHAVIORS, repeat=2)),
    )
    def test_advisory_outcomes_match_required_baseline(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
        required_blocks: bool,
        first: tuple[str, bool],
        second: tuple[str, bool],
    ) -> None:
        required = [
            make_task("gitleaks", report_format="gitleaks"),
            make_task("semgrep", report_format="gitleaks"),
        ]
        behaviors: dict[str, Any] = {
            "gitleaks": ToolOutput(1, LEAK, "") if required_blocks else ToolOutput(0, "[]", ""),
            "semgrep": ToolOutput(0, "[]", ""),
        }
        baseline_results, baseline = ScanAggregator(
            ScanRunner(invoker=fakes.Invoker(behaviors))
        ).evaluate(required, source_target)

        advisory = []
        for task_id, (kind, fail_closed) in (("adv-1", first), ("adv-2", second)):
            advisory.append(
                make_task(
                    task_id, report_format="gitleaks", required=False, fail_closed=fail_closed
                )
            )
            behaviors[task_id] = _advisory_behavior(task_id, kind)
        _, decision = ScanAggregator(ScanRunner(invoker=fakes.Invoker(behaviors))).evaluate(
            required + advisory, source_target
        )

        assert decision.outcome == baseline.outcome
        assert decision.blocked is required_blocks
        assert [r.task_id for r in decision.reasons] == [r.task_id for r in baseline.reasons]
        assert [r.task_id for r in decision.advisories] == [
            task_id
            for task_id, (kind, _) in (("adv-1", first), ("adv-2", second))
            if kind != "success"
        ]


class TestConcurrency:
    """Fan-out, barrier and cancellation behavior."""

    @pytest.mark.requirement("scan-aggregation")
    def test_tasks_run_concurrently(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        clean = ToolOutput(0, "", "")
        invoker = fakes.Invoker({name: _delayed(clean, 0.5) for name in ("a", "b", "c", "d")})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))
        start = time.monotonic()

        results, _ = aggregator.evaluate([make_task(n) for n in ("a", "b", "c", "d")], source_target)

        assert len(results) == 4
        assert time.monotonic() - start < 1.9

    @pytest.mark.requirement("scan-aggregation")
    def test_order_independent_of_completion(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker(
            {
                "alpha": _delayed(ToolOutput(1, "alpha failed", ""), 0.3),
                "beta": ToolOutput(1, "beta failed", ""),
            }
        )
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))

        results, decision = aggregator.evaluate(
            [make_task("beta"), make_task("alpha")], source_target
        )

        assert [r.task_id for r in results] == ["alpha", "beta"]
        assert [r.task_id for r in decision.reasons] == ["alpha", "beta"]

    @pytest.mark.requirement("scan-aggregation")
    def test_worker_past_deadline_is_abandoned(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        # Ignores both its timeout and the cancel event for a while
        invoker = fakes.Invoker({"stuck": _delayed(ToolOutput(0, "", ""), 3.0)})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker), grace_seconds=0.0)
        start = time.monotonic()

        results, decision = aggregator.evaluate(
            [make_task("stuck", timeout_seconds=1, fail_closed=True)], source_target
        )

        assert time.monotonic() - start < 2.5
        assert results[0].status == ScanStatus.TOOL_ERROR
        assert "no result within" in (results[0].error or "")
        assert decision.blocked

    @pytest.mark.requirement("scan-aggregation")
    def test_cancel_event_stops_running_tools(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        invoker = fakes.Invoker({"slow": fakes.block_until_cancelled})
        aggregator = ScanAggregator(ScanRunner(invoker=invoker))
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()

        results, _ = aggregator.evaluate(
            [make_task("slow", timeout_seconds=30)], source_target, cancel
        )

        assert results[0].status == ScanStatus.TOOL_ERROR
        assert "cancelled" in (results[0].error or "")

    @pytest.mark.requirement("scan-aggregation")
    def test_duplicate_task_ids_rejected(
        self,
        fakes: Any,
        make_task: Callable[..., ScanTask],
        source_target: ScanTarget,
    ) -> None:
        aggregator = ScanAggregator(ScanRunner(invoker=fakes.Invoker()))

        with pytest.raises(ValueError, match="Duplicate task ids"):
            aggregator.evaluate([make_task("a"), make_task("a")], source_target)

    @pytest.mark.requirement("scan-aggregation")
    def test_empty_task_set_passes(
        self,
        fakes: Any,
        source_target: ScanTarget,
    ) -> None:
        aggregator = ScanAggregator(ScanRunner(invoker=fakes.Invoker()))

        results, decision = aggregator.evaluate([], source_target)

        assert results == ()
        assert decision.classification == GateClassification.PASS
