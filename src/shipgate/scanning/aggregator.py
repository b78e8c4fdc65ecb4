"""ScanAggregator: concurrent fan-out of scan tasks and fan-in of results.

Every task gets its own worker; the aggregator waits for all of them (or
their timeouts) before classifying, so all findings are collected for
reporting even when an early task already blocks. Results are sorted by
task id, which makes the output independent of completion order: replaying
the same task set against the same target yields the same decision.

Example:
    >>> aggregator = ScanAggregator(ScanRunner(), default_threshold=Severity.HIGH)
    >>> results, decision = aggregator.evaluate(tasks, target)
    >>> decision.outcome
    <GateOutcome.PROCEED: 'proceed'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Collection
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

import structlog

from shipgate.gate import classify
from shipgate.scanning.runner import ScanRunner
from shipgate.schemas.release import GateDecision
from shipgate.schemas.scan import (
    ScanResult,
    ScanStatus,
    ScanTarget,
    ScanTask,
    Severity,
    TargetKind,
)
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class ScanAggregator:
    """Runs a set of ScanTasks concurrently and classifies the outcome.

    Attributes:
        runner: ScanRunner used for every task.
        default_threshold: Severity threshold for tasks without their own.
        grace_seconds: Extra wait beyond a task's timeout before the
            aggregator stops waiting for its worker.
    """

    def __init__(
        self,
        runner: ScanRunner,
        *,
        default_threshold: Severity = Severity.HIGH,
        grace_seconds: float = 10.0,
    ) -> None:
        self.runner = runner
        self.default_threshold = default_threshold
        self.grace_seconds = grace_seconds

    def evaluate(
        self,
        tasks: Collection[ScanTask],
        target: ScanTarget,
        cancel_event: threading.Event | None = None,
        *,
        stage: str | None = None,
    ) -> tuple[tuple[ScanResult, ...], GateDecision]:
        """Run all tasks against the target and classify the results.

        Args:
            tasks: Task set; task ids must be unique.
            target: What every task scans.
            cancel_event: When set, in-flight tools are terminated.
            stage: Gate name for the decision; defaults to the target kind.

        Returns:
            Tuple of (results sorted by task id, GateDecision).

        Raises:
            ValueError: If two tasks share a task id.
        """
        task_list = list(tasks)
        ids = [t.task_id for t in task_list]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate task ids in batch: {duplicates}")

        gate_name = stage or ("source" if target.kind == TargetKind.SOURCE else "image")
        log = logger.bind(stage=gate_name, target=target.ref, task_count=len(task_list))

        with create_span(
            f"shipgate.scan.aggregate.{gate_name}",
            attributes={"task_count": len(task_list), "target_digest": target.digest},
        ) as span:
            start_time = time.monotonic()
            log.info("aggregation_started", tasks=sorted(ids))

            results = self._run_all(task_list, target, cancel_event)
            decision = classify(
                results,
                task_list,
                default_threshold=self.default_threshold,
                stage=gate_name,
            )

            duration_ms = int((time.monotonic() - start_time) * 1000)
            span.set_attribute("outcome", decision.outcome.value)
            span.set_attribute("classification", decision.classification.value)
            span.set_attribute("duration_ms", duration_ms)

            event = "aggregation_blocked" if decision.blocked else "aggregation_completed"
            log_method = log.warning if decision.blocked else log.info
            log_method(
                event,
                outcome=decision.outcome.value,
                classification=decision.classification.value,
                reasons=[r.task_id for r in decision.reasons],
                advisories=[r.task_id for r in decision.advisories],
                duration_ms=duration_ms,
            )
            return results, decision

    def _run_all(
        self,
        tasks: list[ScanTask],
        target: ScanTarget,
        cancel_event: threading.Event | None,
    ) -> tuple[ScanResult, ...]:
        if not tasks:
            return ()

        # Private event so abandoned workers are told to stop even without a caller event
        stop = threading.Event()
        if cancel_event is not None:
            threading.Thread(
                target=self._relay_cancel,
                args=(cancel_event, stop),
                daemon=True,
            ).start()

        executor = ThreadPoolExecutor(
            max_workers=len(tasks),
            thread_name_prefix="shipgate-scan",
        )
        try:
            submitted_at = time.monotonic()
            futures: dict[str, Future[ScanResult]] = {
                task.task_id: executor.submit(self.runner.run, task, target, stop)
                for task in tasks
            }
            results = [
                self._collect(task, target, futures[task.task_id], submitted_at)
                for task in sorted(tasks, key=lambda t: t.task_id)
            ]
        finally:
            stop.set()
            executor.shutdown(wait=False, cancel_futures=True)
        return tuple(results)

    def _collect(
        self,
        task: ScanTask,
        target: ScanTarget,
        future: Future[ScanResult],
        submitted_at: float,
    ) -> ScanResult:
        # Deadlines run from submission, so the barrier is bounded by the slowest task
        deadline = submitted_at + task.timeout_seconds + self.grace_seconds
        done, _ = wait_futures([future], timeout=max(0.0, deadline - time.monotonic()))
        if future in done:
            return future.result()

        future.cancel()
        logger.warning(
            "scan_worker_abandoned",
            task_id=task.task_id,
            timeout_seconds=task.timeout_seconds,
        )
        return ScanResult(
            task_id=task.task_id,
            tool=task.tool,
            target_digest=target.digest,
            status=ScanStatus.TOOL_ERROR,
            error=f"no result within {task.timeout_seconds + self.grace_seconds:.0f}s",
            duration_ms=int((task.timeout_seconds + self.grace_seconds) * 1000),
        )

    @staticmethod
    def _relay_cancel(source: threading.Event, stop: threading.Event) -> None:
        while not stop.is_set():
            if source.wait(timeout=0.2):
                stop.set()
                return


__all__: list[str] = ["ScanAggregator"]
