"""Unit test fixtures for shipgate.

Unit tests run without external tools or services: scanners, the
vulnerability sink, the GitOps endpoint and the deployment target are all
replaced by the in-process fakes below.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from shipgate.errors import ToolExecutionError
from shipgate.resilience import RetryPolicy
from shipgate.scanning.runner import ToolOutput
from shipgate.schemas.config import RetryConfig
from shipgate.schemas.rollout import HealthSignals
from shipgate.schemas.scan import (
    ScanResult,
    ScanStatus,
    ScanTarget,
    ScanTask,
    SeverityHistogram,
    TargetKind,
)

Behavior = ToolOutput | Exception | Callable[[list[str], float, threading.Event | None], ToolOutput]


def make_digest(seed: str) -> str:
    """Deterministic sha256-shaped digest for test fixtures."""
    return "sha256:" + (seed * 64)[:64]


class FakeInvoker:
    """ToolInvoker returning canned outputs keyed by argv[0]."""

    def __init__(self, behaviors: dict[str, Behavior] | None = None) -> None:
        self.behaviors: dict[str, Behavior] = dict(behaviors or {})
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def invoke(
        self,
        argv: list[str],
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> ToolOutput:
        with self._lock:
            self.calls.append(list(argv))
        behavior = self.behaviors.get(argv[0], ToolOutput(0, "", ""))
        if isinstance(behavior, Exception):
            raise behavior
        if callable(behavior):
            return behavior(argv, timeout_seconds, cancel_event)
        return behavior


def block_until_cancelled(argv: list[str], timeout: float, cancel: threading.Event | None) -> ToolOutput:
    """Invoker behavior: run until the cancel event is set."""
    assert cancel is not None
    if cancel.wait(timeout=timeout):
        raise ToolExecutionError(argv[0], "cancelled", cancelled=True)
    raise ToolExecutionError(argv[0], "timed out", timed_out=True)


class FakeDeploymentTarget:
    """DeploymentTarget recording weights and replaying health samples.

    Attributes:
        weights: Every weight set, in order.
        health: Samples returned in order; the last one repeats.
        fail_weights: Weights whose actuation raises ConnectionError.
    """

    def __init__(
        self,
        health: list[HealthSignals] | None = None,
        fail_weights: set[int] | None = None,
    ) -> None:
        self.weights: list[int] = []
        self.health = list(
            health
            or [HealthSignals(error_rate=0.0, latency_percentiles={"p50": 40.0, "p99": 120.0})]
        )
        self.fail_weights = set(fail_weights or ())
        self.health_calls = 0
        self._lock = threading.Lock()

    def set_traffic_weight(self, service: str, version: str, weight: int) -> None:
        if weight in self.fail_weights:
            raise ConnectionError(f"router unavailable for weight {weight}")
        with self._lock:
            self.weights.append(weight)

    def get_health_signals(
        self, service: str, version: str, window_seconds: float
    ) -> HealthSignals:
        with self._lock:
            index = min(self.health_calls, len(self.health) - 1)
            self.health_calls += 1
            return self.health[index]

    @property
    def current_weight(self) -> int:
        return self.weights[-1] if self.weights else 0


class FakeSink:
    """VulnerabilitySink recording batches; fails the first fail_times uploads."""

    def __init__(self, fail_times: int = 0) -> None:
        self.batches: list[Any] = []
        self.attempts = 0
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def upload(self, batch: Any) -> None:
        with self._lock:
            self.attempts += 1
            if self.attempts <= self.fail_times:
                raise ConnectionError("sink unavailable")
            self.batches.append(batch)


class FakeDispatcher:
    """GitOpsDispatcher recording dispatches."""

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []

    def dispatch(self, service: str, digest: str) -> None:
        self.calls.append({"service": service, "digest": digest})


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """RetryPolicy with three attempts and no real sleeping."""
    return RetryPolicy(
        RetryConfig(max_attempts=3, initial_delay_ms=0, jitter=False),
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def source_target() -> ScanTarget:
    return ScanTarget(kind=TargetKind.SOURCE, ref="/src/checkout", digest=make_digest("a"))


@pytest.fixture
def make_task() -> Callable[..., ScanTask]:
    """Factory for ScanTasks whose command is the task id."""

    def _make(task_id: str, **overrides: Any) -> ScanTask:
        fields: dict[str, Any] = {
            "task_id": task_id,
            "tool": task_id,
            "command": [task_id, "${TARGET}"],
            "report_format": "exit-code",
        }
        fields.update(overrides)
        return ScanTask(**fields)

    return _make


@pytest.fixture
def make_result() -> Callable[..., ScanResult]:
    """Factory for ScanResults with a given status."""

    def _make(
        task_id: str,
        status: ScanStatus = ScanStatus.SUCCESS,
        *,
        target_digest: str | None = None,
        histogram: SeverityHistogram | None = None,
        error: str | None = None,
    ) -> ScanResult:
        if status == ScanStatus.FINDINGS and histogram is None:
            histogram = SeverityHistogram(high=1)
        if status == ScanStatus.TOOL_ERROR and error is None:
            error = "tool crashed"
        return ScanResult(
            task_id=task_id,
            tool=task_id,
            target_digest=target_digest or make_digest("a"),
            status=status,
            histogram=histogram,
            error=error,
        )

    return _make


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def fake_target() -> FakeDeploymentTarget:
    return FakeDeploymentTarget()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def fakes() -> Any:
    """Namespace exposing the fake classes and helpers to tests."""

    class _Fakes:
        Invoker = FakeInvoker
        DeploymentTarget = FakeDeploymentTarget
        Sink = FakeSink
        Dispatcher = FakeDispatcher
        digest = staticmethod(make_digest)
        block_until_cancelled = staticmethod(block_until_cancelled)

    return _Fakes
