"""Rollout schemas: plans, stages, health signals and controller state.

RolloutPlan and its stages are immutable. RolloutState is the only mutable
model in shipgate and is owned exclusively by one RolloutController.

Blue-green is the two-stage degenerate case of a canary plan:
stage 0 holds the new version at 0% (shadow/verify), stage 1 cuts over to
100%.

Example:
    >>> plan = RolloutPlan.canary(
    ...     service="checkout-service",
    ...     environment="prod",
    ...     artifact_digest="sha256:" + "a" * 64,
    ...     version="9fceb02d0ae5",
    ...     weights=[10, 50, 100],
    ...     evaluation_window_seconds=300,
    ...     criteria=SuccessCriteria(max_error_rate=0.01),
    ... )
    >>> [s.weight for s in plan.stages]
    [10, 50, 100]
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shipgate.schemas.scan import DIGEST_PATTERN

MAX_HEALTH_SAMPLES = 20
"""Number of health samples retained in RolloutState."""


class RolloutStrategy(str, Enum):
    """Traffic shifting strategy."""

    BLUE_GREEN = "blue_green"
    CANARY = "canary"


class HealthSignals(BaseModel):
    """Health sample of a service version over an evaluation window."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    error_rate: float = Field(..., ge=0.0, le=1.0)
    latency_percentiles: dict[str, float] = Field(default_factory=dict)
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SuccessCriteria(BaseModel):
    """Health thresholds a stage must satisfy to advance.

    A percentile listed in max_latency_ms but missing from the sampled
    signals counts as a violation.

    Examples:
        >>> criteria = SuccessCriteria(max_error_rate=0.01, max_latency_ms={"p99": 500})
        >>> criteria.evaluate(HealthSignals(error_rate=0.05, latency_percentiles={"p99": 120}))
        ['error rate 0.0500 exceeds 0.0100']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_error_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    max_latency_ms: dict[str, float] = Field(default_factory=dict)

    def evaluate(self, signals: HealthSignals) -> list[str]:
        """Return the list of violations (empty when the criteria are met)."""
        violations: list[str] = []
        if self.max_error_rate is not None and signals.error_rate > self.max_error_rate:
            violations.append(
                f"error rate {signals.error_rate:.4f} exceeds {self.max_error_rate:.4f}"
            )
        for percentile, limit in sorted(self.max_latency_ms.items()):
            observed = signals.latency_percentiles.get(percentile)
            if observed is None:
                violations.append(f"{percentile} latency not reported")
            elif observed > limit:
                violations.append(
                    f"{percentile} latency {observed:.1f}ms exceeds {limit:.1f}ms"
                )
        return violations


class RolloutStage(BaseModel):
    """One step of a rollout: traffic weight, evaluation window, criteria."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    weight: int = Field(..., ge=0, le=100, description="Traffic weight in percent")
    evaluation_window_seconds: float = Field(
        ...,
        ge=0,
        description="Wait before sampling health",
    )
    criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)


class RolloutPlan(BaseModel):
    """Ordered traffic stages for one artifact in one environment.

    Stage weights must be non-decreasing and the last stage must reach 100%.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    plan_id: str = Field(default_factory=lambda: str(uuid4()))
    service: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    artifact_digest: str = Field(..., pattern=DIGEST_PATTERN)
    version: str = Field(..., min_length=1)
    strategy: RolloutStrategy
    stages: list[RolloutStage] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_stages(self) -> RolloutPlan:
        """Check stage weights are monotonic and end at 100%."""
        weights = [stage.weight for stage in self.stages]
        if any(b < a for a, b in zip(weights, weights[1:])):
            raise ValueError(f"Stage weights must be non-decreasing: {weights}")
        if weights[-1] != 100:
            raise ValueError(f"Last stage must reach 100%, got {weights[-1]}%")
        if self.strategy == RolloutStrategy.BLUE_GREEN and weights != [0, 100]:
            raise ValueError(f"Blue-green plans have stages [0, 100], got {weights}")
        return self

    @property
    def key(self) -> tuple[str, str]:
        """Ownership key: (service, environment)."""
        return (self.service, self.environment)

    @classmethod
    def canary(
        cls,
        *,
        service: str,
        environment: str,
        artifact_digest: str,
        version: str,
        weights: list[int],
        evaluation_window_seconds: float,
        criteria: SuccessCriteria | None = None,
    ) -> RolloutPlan:
        """Build a canary plan with the same window and criteria per stage."""
        stages = [
            RolloutStage(
                weight=weight,
                evaluation_window_seconds=evaluation_window_seconds,
                criteria=criteria or SuccessCriteria(),
            )
            for weight in weights
        ]
        return cls(
            service=service,
            environment=environment,
            artifact_digest=artifact_digest,
            version=version,
            strategy=RolloutStrategy.CANARY,
            stages=stages,
        )

    @classmethod
    def blue_green(
        cls,
        *,
        service: str,
        environment: str,
        artifact_digest: str,
        version: str,
        evaluation_window_seconds: float,
        criteria: SuccessCriteria | None = None,
    ) -> RolloutPlan:
        """Build a blue-green plan: 0% verify stage, then 100% cutover."""
        stages = [
            RolloutStage(
                weight=weight,
                evaluation_window_seconds=evaluation_window_seconds,
                criteria=criteria or SuccessCriteria(),
            )
            for weight in (0, 100)
        ]
        return cls(
            service=service,
            environment=environment,
            artifact_digest=artifact_digest,
            version=version,
            strategy=RolloutStrategy.BLUE_GREEN,
            stages=stages,
        )


class RolloutStatus(str, Enum):
    """RolloutController states."""

    ADVANCING = "advancing"
    PAUSED = "paused"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no transition may leave this state."""
        return self in (RolloutStatus.COMPLETED, RolloutStatus.FAILED)


class RollbackReport(BaseModel):
    """What triggered a rollback: stage, weight and health signal values."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage_index: int = Field(..., ge=0)
    weight_at_failure: int = Field(..., ge=0, le=100)
    reason: str
    signals: HealthSignals | None = None
    violations: list[str] = Field(default_factory=list)
    automatic: bool = True


class RolloutTransition(BaseModel):
    """One entry in the rollout history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_status: RolloutStatus | None
    to_status: RolloutStatus
    stage_index: int
    weight: int
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    note: str | None = None


class RolloutState(BaseModel):
    """Mutable controller state for one plan.

    Owned and mutated only by its RolloutController.
    """

    model_config = ConfigDict(extra="forbid")

    plan_id: str
    stage_index: int = 0
    current_weight: int = 0
    stable_weight: int = 0
    status: RolloutStatus = RolloutStatus.ADVANCING
    traffic_shifted: bool = False
    health_samples: list[HealthSignals] = Field(default_factory=list)
    rollback: RollbackReport | None = None
    history: list[RolloutTransition] = Field(default_factory=list)

    def record_sample(self, signals: HealthSignals) -> None:
        """Append a health sample, keeping the last MAX_HEALTH_SAMPLES."""
        self.health_samples.append(signals)
        del self.health_samples[:-MAX_HEALTH_SAMPLES]


__all__: list[str] = [
    "MAX_HEALTH_SAMPLES",
    "RolloutStrategy",
    "HealthSignals",
    "SuccessCriteria",
    "RolloutStage",
    "RolloutPlan",
    "RolloutStatus",
    "RollbackReport",
    "RolloutTransition",
    "RolloutState",
]
