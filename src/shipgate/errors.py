"""Exception hierarchy for shipgate.

All exceptions inherit from ShipgateError, which carries the CLI exit code
for its class.

Exception Hierarchy:
    ShipgateError (base)
    ├── ConfigurationError          # Invalid or unreadable configuration
    ├── ChangeEventConsumedError    # ChangeEvent replayed into a second run
    ├── ToolExecutionError          # Scanner crashed, timed out or was cancelled
    │   └── AdapterParseError       # Scanner output could not be normalized
    ├── FindingsBlockedError        # Required task blocked the gate
    ├── BuildFailureError           # Artifact could not be built or pushed
    ├── HealthRegressionError       # Rollout stage criteria violated
    ├── ReportingFailureError       # Vulnerability sink upload exhausted retries
    ├── DispatchError               # GitOps dispatch exhausted retries
    ├── PipelineCancelledError      # Run superseded by a newer ChangeEvent
    └── RolloutError
        ├── RolloutConflictError           # Another plan active on the key
        ├── InvalidRolloutTransitionError  # Transition from a terminal state
        └── RolloutActuationError          # Deployment target refused a weight

Only FindingsBlockedError and BuildFailureError stop a pipeline run.
ToolExecutionError is converted into a tool_error ScanResult by the runner,
HealthRegressionError triggers a rollback and ReportingFailureError is
logged only.

Exit Codes:
    0 - Success
    1 - General error (ShipgateError)
    2 - Configuration or input error
    3 - Release blocked by findings
    4 - Build failure
    5 - GitOps dispatch failure
    6 - Rollout error
    7 - Pipeline cancelled
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shipgate.schemas.release import GateDecision
    from shipgate.schemas.rollout import HealthSignals


class ShipgateError(Exception):
    """Base exception for all shipgate errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigurationError(ShipgateError):
    """Raised when the orchestrator configuration is invalid.

    Attributes:
        source: Path or description of the configuration source.
        reason: What is wrong with it.
    """

    exit_code: int = 2

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration {source}: {reason}")


class ChangeEventConsumedError(ShipgateError):
    """Raised when a ChangeEvent is submitted for a second pipeline run."""

    exit_code: int = 2

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Change event already consumed: {event_id}")


class ToolExecutionError(ShipgateError):
    """Raised when an external scanner cannot produce a usable report.

    Never escapes ScanRunner.run(): the runner converts it into a ScanResult
    with status tool_error.

    Attributes:
        tool: Tool identifier.
        reason: Description of the failure.
        timed_out: Whether the tool exceeded its timeout.
        cancelled: Whether the run was cancelled.
    """

    def __init__(
        self,
        tool: str,
        reason: str,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> None:
        self.tool = tool
        self.reason = reason
        self.timed_out = timed_out
        self.cancelled = cancelled
        super().__init__(f"{tool}: {reason}")


class AdapterParseError(ToolExecutionError):
    """Raised when scanner output cannot be parsed by its adapter.

    Attributes:
        report_format: Adapter name that failed.
        raw_output: First 500 chars of the problematic output.
    """

    def __init__(
        self,
        message: str,
        report_format: str = "unknown",
        raw_output: str | None = None,
    ) -> None:
        self.report_format = report_format
        self.raw_output = raw_output[:500] if raw_output else None
        super().__init__(report_format, message)


class FindingsBlockedError(ShipgateError):
    """Raised when a GateDecision blocks the release.

    Attributes:
        decision: The Blocked GateDecision with its full reasons list.
    """

    exit_code: int = 3

    def __init__(self, decision: GateDecision) -> None:
        self.decision = decision
        super().__init__(decision.summary())


class BuildFailureError(ShipgateError):
    """Raised when the ArtifactBuilder cannot produce a verified digest.

    Fatal: the pipeline run aborts and no rollout is attempted.

    Attributes:
        service: Service being built.
        reason: Description of the failure.
    """

    exit_code: int = 4

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"Build failed for {service}: {reason}")


class HealthRegressionError(ShipgateError):
    """Raised inside the RolloutController when stage criteria are violated.

    Attributes:
        stage_index: Stage whose evaluation failed.
        weight: Traffic weight at the time of failure.
        signals: Health signals that were sampled, if any.
        violations: Human readable criteria violations.
    """

    def __init__(
        self,
        stage_index: int,
        weight: int,
        signals: HealthSignals | None,
        violations: list[str],
    ) -> None:
        self.stage_index = stage_index
        self.weight = weight
        self.signals = signals
        self.violations = violations
        super().__init__(
            f"Health regression at stage {stage_index} (weight {weight}%): "
            + "; ".join(violations)
        )


class ReportingFailureError(ShipgateError):
    """Raised when the vulnerability sink rejects a batch after all retries."""

    def __init__(self, batch_key: str, reason: str) -> None:
        self.batch_key = batch_key
        self.reason = reason
        super().__init__(f"Reporting failed for {batch_key}: {reason}")


class DispatchError(ShipgateError):
    """Raised when the GitOps dispatch cannot be delivered."""

    exit_code: int = 5

    def __init__(self, service: str, digest: str, reason: str) -> None:
        self.service = service
        self.digest = digest
        self.reason = reason
        super().__init__(f"GitOps dispatch failed for {service}@{digest}: {reason}")


class PipelineCancelledError(ShipgateError):
    """Raised when a run is superseded by a newer ChangeEvent."""

    exit_code: int = 7

    def __init__(self, service: str, branch: str, checkpoint: str) -> None:
        self.service = service
        self.branch = branch
        self.checkpoint = checkpoint
        super().__init__(
            f"Pipeline for {service}@{branch} cancelled at {checkpoint}"
        )


class RolloutError(ShipgateError):
    """Base exception for rollout failures."""

    exit_code: int = 6


class RolloutConflictError(RolloutError):
    """Raised when a service+environment pair already has an active plan."""

    def __init__(self, service: str, environment: str, active_plan_id: str) -> None:
        self.service = service
        self.environment = environment
        self.active_plan_id = active_plan_id
        super().__init__(
            f"Rollout already active for {service} in {environment}: {active_plan_id}"
        )


class InvalidRolloutTransitionError(RolloutError):
    """Raised when a transition is requested from a state that forbids it."""

    def __init__(self, plan_id: str, from_status: str, action: str) -> None:
        self.plan_id = plan_id
        self.from_status = from_status
        self.action = action
        super().__init__(f"Cannot {action} rollout {plan_id} in status {from_status}")


class RolloutActuationError(RolloutError):
    """Raised when the deployment target refuses a traffic weight change."""

    def __init__(self, service: str, weight: int, reason: str) -> None:
        self.service = service
        self.weight = weight
        self.reason = reason
        super().__init__(f"Failed to set weight {weight}% for {service}: {reason}")


__all__: list[str] = [
    "ShipgateError",
    "ConfigurationError",
    "ChangeEventConsumedError",
    "ToolExecutionError",
    "AdapterParseError",
    "FindingsBlockedError",
    "BuildFailureError",
    "HealthRegressionError",
    "ReportingFailureError",
    "DispatchError",
    "PipelineCancelledError",
    "RolloutError",
    "RolloutConflictError",
    "InvalidRolloutTransitionError",
    "RolloutActuationError",
]
