"""RolloutController: progressive traffic shifting with automatic rollback.

State machine per RolloutPlan::

    (new) --start--> advancing --step--> advancing ... --step--> completed
                        |  ^                  |
                  pause |  | resume           | health regression,
                        v  |                  | cancel, rollback()
                       paused                 v
                                         rolling_back --weight restored--> failed

The controller is the only writer of its RolloutState and the only caller
of the DeploymentTarget for its plan. Two locks are involved:

- the state lock guards RolloutState and is never held across a call to
  the DeploymentTarget, so status reads, pause and resume never wait on
  the network. Evaluation windows are waited out on a condition bound to
  this lock, so pause, resume, cancel and rollback interrupt them;
- the actuation lock serializes weight changes. It is always taken before
  the state lock. An abort sets a stop event first, so a forward weight
  change or health sample in flight gives up its remaining retries and
  the abort only waits for the current request to finish.

A stage is never skipped: each successful evaluation advances exactly one
stage. A plan never reports failed until the stable weight is restored.

Example:
    >>> controller = RolloutController(plan, HttpDeploymentTarget(config.deployment))
    >>> state = controller.run()
    >>> state.status
    <RolloutStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

from shipgate.errors import (
    HealthRegressionError,
    InvalidRolloutTransitionError,
    RolloutActuationError,
)
from shipgate.resilience import DEFAULT_RETRYABLE, RetryPolicy
from shipgate.rollout.target import DeploymentTarget
from shipgate.schemas.rollout import (
    HealthSignals,
    RollbackReport,
    RolloutPlan,
    RolloutStage,
    RolloutState,
    RolloutStatus,
    RolloutTransition,
)
from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

NOT_STARTED = "not_started"


class RolloutController:
    """Drives one RolloutPlan against a DeploymentTarget.

    Attributes:
        plan: The immutable plan being executed.
        target: Deployment target receiving weight changes.
        retry_policy: Backoff for target calls.
    """

    def __init__(
        self,
        plan: RolloutPlan,
        target: DeploymentTarget,
        *,
        retry_policy: RetryPolicy | None = None,
        on_terminal: Callable[[RolloutController], None] | None = None,
    ) -> None:
        self.plan = plan
        self.target = target
        self.retry_policy = retry_policy or RetryPolicy(
            retryable_exceptions=(*DEFAULT_RETRYABLE, RolloutActuationError)
        )
        self._state = RolloutState(plan_id=plan.plan_id)
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._actuation = threading.Lock()
        self._stop = threading.Event()
        self._started = False
        self._terminal = threading.Event()
        self._terminal_fired = False
        self._on_terminal = on_terminal
        self._log = logger.bind(
            plan_id=plan.plan_id,
            service=plan.service,
            environment=plan.environment,
            strategy=plan.strategy.value,
        )

    @property
    def state(self) -> RolloutState:
        """Snapshot of the controller state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    @property
    def status(self) -> RolloutStatus:
        with self._lock:
            return self._state.status

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    def wait_until_terminal(self, timeout: float | None = None) -> bool:
        """Block until the plan completes or fails. Returns False on timeout."""
        return self._terminal.wait(timeout)

    # Transitions

    def start(self) -> RolloutState:
        """Enter advancing at stage 0 and set the stage 0 weight.

        Raises:
            InvalidRolloutTransitionError: If already started.
        """
        with self._changed:
            if self._started:
                raise InvalidRolloutTransitionError(
                    self.plan.plan_id, self._state.status.value, "start"
                )
            self._started = True
            self._transition(RolloutStatus.ADVANCING, note="started")
        with self._actuation:
            self._shift(self.plan.stages[0].weight)
        self._fire_terminal()
        return self.state

    def step(self) -> RolloutState:
        """Evaluate the current stage and advance, complete or roll back.

        Waits out the stage's evaluation window first. While paused the
        wait is suspended and restarts on resume. A health sample taken
        while the plan was paused, cancelled or rolled back is discarded.

        Raises:
            InvalidRolloutTransitionError: If not started, terminal or
                rolling back.
            RolloutActuationError: If a rollback could not restore the
                stable weight.
        """
        with self._changed:
            self._require(
                "step",
                allowed=(RolloutStatus.ADVANCING, RolloutStatus.PAUSED),
            )
            stage_index = self._state.stage_index
        stage = self.plan.stages[stage_index]

        with create_span(
            "shipgate.rollout.step",
            attributes={
                "plan_id": self.plan.plan_id,
                "stage_index": stage_index,
                "weight": stage.weight,
            },
        ) as span:
            self._step(stage_index, stage)
            span.set_attribute("status", self.status.value)
        self._fire_terminal()
        return self.state

    def run(self) -> RolloutState:
        """Start (if needed) and step until a terminal state is reached."""
        if not self.started:
            self.start()
        while not self.status.is_terminal:
            if self._stop.is_set():
                # Let the abort running in another thread finish its actuation
                with self._actuation:
                    pass
                if self.status.is_terminal:
                    break
            try:
                self.step()
            except InvalidRolloutTransitionError:
                # Cancelled from another thread between checks
                if not self.status.is_terminal:
                    raise
        state = self.state
        self._log.info(
            "rollout_finished",
            status=state.status.value,
            weight=state.current_weight,
        )
        return state

    def pause(self) -> RolloutState:
        """Hold traffic at the current stage."""
        with self._changed:
            self._require("pause", allowed=(RolloutStatus.ADVANCING,))
            self._transition(RolloutStatus.PAUSED, note="paused")
            return self._state.model_copy(deep=True)

    def resume(self) -> RolloutState:
        """Continue a paused plan at the same stage."""
        with self._changed:
            self._require("resume", allowed=(RolloutStatus.PAUSED,))
            self._transition(RolloutStatus.ADVANCING, note="resumed")
            return self._state.model_copy(deep=True)

    def rollback(self, reason: str) -> RolloutState:
        """Manually switch traffic back to the stable version.

        Also retries a rollback whose weight restoration previously failed.
        """
        return self._abort(reason, action="rollback")

    def cancel(self, reason: str) -> RolloutState:
        """Abandon the plan.

        Before any traffic was shifted the plan fails directly; afterwards
        it rolls back first.
        """
        return self._abort(reason, action="cancel")

    # Internals

    def _abort(self, reason: str, *, action: str) -> RolloutState:
        with self._changed:
            self._reject_if_terminal(action)
            self._stop.set()
            self._changed.notify_all()

        with self._actuation:
            with self._changed:
                # A step may have completed the plan while we waited
                self._reject_if_terminal(action)
                report = self._report(reason, automatic=False)
                shifted = (
                    self._state.traffic_shifted
                    or self._state.status == RolloutStatus.ROLLING_BACK
                )
                if not shifted:
                    self._state.rollback = report
                    self._started = True
                    self._transition(RolloutStatus.FAILED, note=f"{action}: {reason}")
            if shifted:
                self._roll_back(report)
        self._fire_terminal()
        return self.state

    def _reject_if_terminal(self, action: str) -> None:
        if self._state.status.is_terminal:
            raise InvalidRolloutTransitionError(
                self.plan.plan_id, self._state.status.value, action
            )

    def _require(self, action: str, *, allowed: tuple[RolloutStatus, ...]) -> None:
        if not self._started:
            raise InvalidRolloutTransitionError(self.plan.plan_id, NOT_STARTED, action)
        if self._state.status not in allowed:
            raise InvalidRolloutTransitionError(
                self.plan.plan_id, self._state.status.value, action
            )

    def _step(self, stage_index: int, stage: RolloutStage) -> None:
        with self._changed:
            if not self._wait_window(stage.evaluation_window_seconds):
                return

        signals = self._sample(stage)

        with self._actuation:
            with self._changed:
                if (
                    self._stop.is_set()
                    or self._state.status != RolloutStatus.ADVANCING
                    or self._state.stage_index != stage_index
                ):
                    self._log.debug(
                        "rollout_sample_discarded",
                        stage_index=stage_index,
                        status=self._state.status.value,
                    )
                    return
                try:
                    self._check_health(stage_index, stage, signals)
                except HealthRegressionError as e:
                    self._log.warning(
                        "rollout_health_regression",
                        stage_index=e.stage_index,
                        weight=e.weight,
                        violations=e.violations,
                    )
                    report: RollbackReport | None = RollbackReport(
                        stage_index=e.stage_index,
                        weight_at_failure=e.weight,
                        reason=str(e),
                        signals=e.signals,
                        violations=e.violations,
                    )
                else:
                    report = None
                    if stage_index == len(self.plan.stages) - 1:
                        self._state.stable_weight = self._state.current_weight
                        self._transition(RolloutStatus.COMPLETED, note="all stages passed")
                        return

            if report is not None:
                self._roll_back(report)
                return

            next_index = stage_index + 1
            if self._shift(self.plan.stages[next_index].weight):
                with self._changed:
                    self._state.stage_index = next_index
                    # A pause that arrived during the weight change is kept
                    self._transition(self._state.status, note=f"stage {next_index}")

    def _wait_window(self, seconds: float) -> bool:
        """Wait out an evaluation window. False if interrupted."""
        deadline = time.monotonic() + seconds
        while True:
            if self._stop.is_set() or self._state.status.is_terminal:
                return False
            if self._state.status == RolloutStatus.PAUSED:
                self._changed.wait()
                deadline = time.monotonic() + seconds
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            self._changed.wait(timeout=remaining)

    def _check_health(
        self, stage_index: int, stage: RolloutStage, signals: HealthSignals | None
    ) -> None:
        if signals is None:
            raise HealthRegressionError(
                stage_index,
                self._state.current_weight,
                None,
                ["health signals unavailable"],
            )
        self._state.record_sample(signals)
        violations = stage.criteria.evaluate(signals)
        if violations:
            raise HealthRegressionError(
                stage_index, self._state.current_weight, signals, violations
            )
        self._log.info(
            "rollout_stage_passed",
            stage_index=stage_index,
            weight=self._state.current_weight,
            error_rate=signals.error_rate,
        )

    def _sample(self, stage: RolloutStage) -> HealthSignals | None:
        """Sample health outside the state lock; any failure yields None."""
        try:
            return self.retry_policy.call(
                lambda: self.target.get_health_signals(
                    self.plan.service, self.plan.version, stage.evaluation_window_seconds
                ),
                operation="get_health_signals",
                stop=self._stop,
            )
        except Exception as e:
            self._log.error(
                "health_sampling_failed",
                error_type=type(e).__name__,
                error=sanitize_error_message(str(e)),
            )
            return None

    def _shift(self, weight: int) -> bool:
        """Move traffic forward to weight. Caller holds the actuation lock.

        Returns:
            True if the weight was applied. A failed actuation rolls back,
            unless an abort is pending, which then owns the rollback.
        """
        if self._stop.is_set():
            return False
        try:
            self._actuate(weight, stop=self._stop)
        except RolloutActuationError as e:
            if not self._stop.is_set():
                self._roll_back(self._report(e.reason, automatic=True))
            return False
        with self._changed:
            self._apply_weight(weight)
        return True

    def _actuate(self, weight: int, *, stop: threading.Event | None = None) -> None:
        try:
            self.retry_policy.call(
                lambda: self.target.set_traffic_weight(
                    self.plan.service, self.plan.version, weight
                ),
                operation="set_traffic_weight",
                stop=stop,
            )
        except RolloutActuationError:
            raise
        except Exception as e:
            raise RolloutActuationError(
                self.plan.service, weight, sanitize_error_message(str(e))
            ) from e

    def _apply_weight(self, weight: int) -> None:
        self._state.current_weight = weight
        if weight > 0:
            self._state.traffic_shifted = True

    def _roll_back(self, report: RollbackReport) -> None:
        """Restore the stable weight, then fail. Caller holds the actuation lock."""
        with self._changed:
            if self._state.status != RolloutStatus.ROLLING_BACK:
                self._state.rollback = report
                self._transition(RolloutStatus.ROLLING_BACK, note=report.reason)
            stable = self._state.stable_weight
        try:
            self._actuate(stable)
        except RolloutActuationError as e:
            self._log.error(
                "rollout_restore_failed",
                stable_weight=stable,
                error=e.reason,
            )
            raise
        with self._changed:
            self._apply_weight(stable)
            self._transition(RolloutStatus.FAILED, note=f"restored weight {stable}%")

    def _report(self, reason: str, *, automatic: bool) -> RollbackReport:
        with self._lock:
            return RollbackReport(
                stage_index=self._state.stage_index,
                weight_at_failure=self._state.current_weight,
                reason=reason,
                automatic=automatic,
            )

    def _transition(self, to_status: RolloutStatus, *, note: str | None = None) -> None:
        previous = self._state.status if self._state.history else None
        self._state.status = to_status
        self._state.history.append(
            RolloutTransition(
                from_status=previous,
                to_status=to_status,
                stage_index=self._state.stage_index,
                weight=self._state.current_weight,
                note=note,
            )
        )
        log_method = (
            self._log.warning
            if to_status in (RolloutStatus.ROLLING_BACK, RolloutStatus.FAILED)
            else self._log.info
        )
        log_method(
            "rollout_transition",
            from_status=previous.value if previous else None,
            to_status=to_status.value,
            stage_index=self._state.stage_index,
            weight=self._state.current_weight,
            note=note,
        )
        self._changed.notify_all()

    def _fire_terminal(self) -> None:
        with self._lock:
            if not self._state.status.is_terminal or self._terminal_fired:
                return
            self._terminal_fired = True
        self._terminal.set()
        if self._on_terminal is not None:
            self._on_terminal(self)


__all__: list[str] = ["RolloutController"]
