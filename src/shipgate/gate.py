"""Gate classification and the ReleaseGate.

Both rules here are pure: they derive a GateDecision from scan results
and never touch an external tool, which keeps every gating rule unit
testable.

Classification rule (classify):
    Blocked if and only if at least one required task produced findings at
    or above its severity threshold, or produced a tool error and is
    fail-closed. Every other combination, including every advisory task
    failing, proceeds. A proceeding gate with findings or tool errors is a
    soft fail.

Release rule (ReleaseGate.decide):
    Proceed only when both the source and image decisions proceed;
    otherwise Blocked with the union of blocking reasons.

Example:
    >>> decision = classify(results, tasks, default_threshold=Severity.HIGH, stage="source")
    >>> decision.outcome
    <GateOutcome.PROCEED: 'proceed'>
    >>> ReleaseGate().decide(decision, image_decision).blocked
    False
"""

from __future__ import annotations

from collections.abc import Iterable

from shipgate.schemas.release import GateClassification, GateDecision, GateOutcome
from shipgate.schemas.scan import ScanResult, ScanStatus, ScanTask, Severity
from shipgate.telemetry.tracing import traced


def is_blocking(result: ScanResult, task: ScanTask, default_threshold: Severity) -> bool:
    """Whether a single result blocks under its task's gating flags."""
    if not task.required:
        return False
    if result.status == ScanStatus.TOOL_ERROR:
        return task.fail_closed
    if result.status == ScanStatus.FINDINGS and result.histogram is not None:
        threshold = task.severity_threshold or default_threshold
        return result.histogram.at_or_above(threshold) > 0
    return False


def classify(
    results: Iterable[ScanResult],
    tasks: Iterable[ScanTask],
    *,
    default_threshold: Severity,
    stage: str,
) -> GateDecision:
    """Classify a batch of results into a GateDecision.

    Results are ordered by task_id before classification, so the decision
    does not depend on the order in which tools finished.

    Args:
        results: One result per task.
        tasks: The tasks that produced the results.
        default_threshold: Threshold for tasks without their own.
        stage: Gate name recorded on the decision (source, image).

    Returns:
        GateDecision with ordered reasons and advisories.

    Raises:
        ValueError: If a result does not belong to any of the tasks.
    """
    tasks_by_id = {task.task_id: task for task in tasks}
    reasons: list[ScanResult] = []
    advisories: list[ScanResult] = []

    for result in sorted(results, key=lambda r: r.task_id):
        task = tasks_by_id.get(result.task_id)
        if task is None:
            raise ValueError(f"Result for unknown task: {result.task_id}")
        if is_blocking(result, task, default_threshold):
            reasons.append(result)
        elif result.status != ScanStatus.SUCCESS:
            advisories.append(result)

    if reasons:
        outcome = GateOutcome.BLOCKED
        classification = GateClassification.HARD_FAIL
    elif advisories:
        outcome = GateOutcome.PROCEED
        classification = GateClassification.SOFT_FAIL
    else:
        outcome = GateOutcome.PROCEED
        classification = GateClassification.PASS

    return GateDecision(
        outcome=outcome,
        classification=classification,
        stage=stage,
        reasons=reasons,
        advisories=advisories,
    )


def _union(*groups: list[ScanResult]) -> list[ScanResult]:
    merged: list[ScanResult] = []
    seen: set[tuple[str, str]] = set()
    for group in groups:
        for result in group:
            if result.identity in seen:
                continue
            seen.add(result.identity)
            merged.append(result)
    return merged


class ReleaseGate:
    """Combines the source-stage and image-stage decisions."""

    @traced(name="shipgate.gate.decide", attributes={"gate": "release"})
    def decide(
        self,
        source_decision: GateDecision,
        image_decision: GateDecision,
    ) -> GateDecision:
        """Final release decision.

        Args:
            source_decision: Decision over the source-stage scans.
            image_decision: Decision over the artifact image scans.

        Returns:
            Proceed if both inputs proceed, otherwise Blocked carrying the
            union of blocking reasons (source first, then image).
        """
        reasons = _union(source_decision.reasons, image_decision.reasons)
        advisories = _union(source_decision.advisories, image_decision.advisories)

        if source_decision.proceed and image_decision.proceed:
            outcome = GateOutcome.PROCEED
            classification = (
                GateClassification.SOFT_FAIL
                if GateClassification.SOFT_FAIL
                in (source_decision.classification, image_decision.classification)
                else GateClassification.PASS
            )
        else:
            outcome = GateOutcome.BLOCKED
            classification = GateClassification.HARD_FAIL

        return GateDecision(
            outcome=outcome,
            classification=classification,
            stage="release",
            reasons=reasons,
            advisories=advisories,
        )


__all__: list[str] = ["is_blocking", "classify", "ReleaseGate"]
