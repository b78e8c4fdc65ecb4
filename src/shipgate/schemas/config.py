"""Orchestrator configuration schemas.

Configuration is loaded once at orchestrator start (see shipgate.config)
and never mutated at runtime; every model here is frozen.

Key Components:
    RetryConfig: Bounded exponential backoff settings
    HttpEndpointConfig: Outbound HTTP collaborator (sink, GitOps, deployment)
    RolloutConfig: Strategy, stages and criteria used to build RolloutPlans
    PipelineConfig: Path-selected set of source and image scans
    OrchestratorConfig: Top-level configuration

Example:
    >>> config = OrchestratorConfig.model_validate(yaml.safe_load(text))
    >>> config.select_pipeline("checkout-service", ["services/checkout/app.py"]).name
    'checkout'
"""

from __future__ import annotations

import fnmatch
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from shipgate.schemas.rollout import (
    RolloutPlan,
    RolloutStage,
    RolloutStrategy,
    SuccessCriteria,
)
from shipgate.schemas.scan import ScanStage, ScanTask, Severity


class RetryConfig(BaseModel):
    """Retry policy configuration for transient failures.

    Uses exponential backoff with optional jitter to prevent thundering herd.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts",
    )
    initial_delay_ms: int = Field(
        default=500,
        ge=0,
        description="Initial delay between retries in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=10000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays to prevent thundering herd",
    )


class HttpEndpointConfig(BaseModel):
    """Outbound HTTP collaborator configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Base or endpoint URL")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers")
    timeout_seconds: float = Field(default=10.0, gt=0, le=300)

    @field_validator("url")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        """Only http(s) endpoints are supported."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must use http or https: {v}")
        return v.rstrip("/")


class RolloutConfig(BaseModel):
    """How approved releases are rolled out.

    Canary rollouts list their stages; blue-green rollouts only need the
    evaluation window and criteria since their stages are fixed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: RolloutStrategy = Field(default=RolloutStrategy.CANARY)
    stages: list[RolloutStage] | None = Field(default=None)
    evaluation_window_seconds: float = Field(default=300, ge=0)
    criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)

    @model_validator(mode="after")
    def validate_strategy(self) -> RolloutConfig:
        """Canary rollouts need explicit stages; blue-green stages are fixed."""
        if self.strategy == RolloutStrategy.CANARY and not self.stages:
            raise ValueError("Canary rollout requires at least one stage")
        if self.strategy == RolloutStrategy.BLUE_GREEN and self.stages is not None:
            raise ValueError(
                "Blue-green rollout does not accept stages; "
                "use evaluation_window_seconds and criteria"
            )
        return self

    def build_plan(
        self,
        *,
        service: str,
        environment: str,
        artifact_digest: str,
        version: str,
    ) -> RolloutPlan:
        """Create a fresh RolloutPlan for one deployment request."""
        if self.strategy == RolloutStrategy.BLUE_GREEN:
            return RolloutPlan.blue_green(
                service=service,
                environment=environment,
                artifact_digest=artifact_digest,
                version=version,
                evaluation_window_seconds=self.evaluation_window_seconds,
                criteria=self.criteria,
            )
        # Stages without their own criteria inherit the rollout-level ones.
        stages = [
            stage
            if "criteria" in stage.model_fields_set
            else stage.model_copy(update={"criteria": self.criteria})
            for stage in self.stages or []
        ]
        return RolloutPlan(
            service=service,
            environment=environment,
            artifact_digest=artifact_digest,
            version=version,
            strategy=RolloutStrategy.CANARY,
            stages=stages,
        )


def _check_unique_task_ids(tasks: list[ScanTask], label: str) -> None:
    seen: set[str] = set()
    for task in tasks:
        if task.task_id in seen:
            raise ValueError(f"Duplicate task_id in {label}: {task.task_id}")
        seen.add(task.task_id)


class PipelineConfig(BaseModel):
    """Scan and rollout configuration selected by changed paths.

    Attributes:
        name: Pipeline name.
        services: Services this pipeline applies to (empty means any).
        paths: Glob patterns (fnmatch) matched against changed paths.
        source_scans: Tasks run against the source tree.
        image_scans: Tasks run against the built artifact.
        rollout: Rollout configuration, or None to stop after release.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    services: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=lambda: ["*"])
    source_scans: list[ScanTask] = Field(default_factory=list)
    image_scans: list[ScanTask] = Field(default_factory=list)
    rollout: RolloutConfig | None = Field(default=None)

    @field_validator("source_scans", "image_scans", mode="before")
    @classmethod
    def default_stage(cls, v: Any, info: ValidationInfo) -> Any:
        """Fill in the stage of each task from the list it is declared in."""
        stage = ScanStage.SOURCE if info.field_name == "source_scans" else ScanStage.IMAGE
        if isinstance(v, list):
            return [
                {**item, "stage": item.get("stage", stage.value)}
                if isinstance(item, dict)
                else item
                for item in v
            ]
        return v

    @model_validator(mode="after")
    def validate_tasks(self) -> PipelineConfig:
        """Task ids are unique per stage and stages match their list."""
        _check_unique_task_ids(self.source_scans, f"{self.name}.source_scans")
        _check_unique_task_ids(self.image_scans, f"{self.name}.image_scans")
        for task in self.source_scans:
            if task.stage != ScanStage.SOURCE:
                raise ValueError(f"Task {task.task_id} in source_scans has stage {task.stage.value}")
        for task in self.image_scans:
            if task.stage != ScanStage.IMAGE:
                raise ValueError(f"Task {task.task_id} in image_scans has stage {task.stage.value}")
        return self

    def matches(self, service: str, changed_paths: list[str]) -> bool:
        """Whether this pipeline applies to the change."""
        if self.services and service not in self.services:
            return False
        if not changed_paths:
            return False
        return any(
            fnmatch.fnmatch(path, pattern)
            for path in changed_paths
            for pattern in self.paths
        )


class OrchestratorConfig(BaseModel):
    """Top-level shipgate configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_severity_threshold: Severity = Field(default=Severity.HIGH)
    report_dir: str = Field(default=".shipgate/reports")
    registry_dir: str = Field(default=".shipgate/registry")
    task_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Extra wait beyond a task timeout before the aggregator gives up",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    reporting: HttpEndpointConfig | None = Field(default=None)
    gitops: HttpEndpointConfig | None = Field(default=None)
    deployment: HttpEndpointConfig | None = Field(default=None)
    pipelines: list[PipelineConfig] = Field(default_factory=list)

    @field_validator("default_severity_threshold", mode="before")
    @classmethod
    def normalize_threshold(cls, v: Any) -> Any:
        """Accept severity labels in any case."""
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def validate_pipeline_names(self) -> OrchestratorConfig:
        """Pipeline names are unique."""
        names = [p.name for p in self.pipelines]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate pipeline names: {duplicates}")
        return self

    def select_pipeline(
        self, service: str, changed_paths: list[str]
    ) -> PipelineConfig | None:
        """Return the first pipeline that applies to the change, if any."""
        for pipeline in self.pipelines:
            if pipeline.matches(service, changed_paths):
                return pipeline
        return None

    def get_pipeline(self, name: str) -> PipelineConfig | None:
        """Look up a pipeline by name."""
        for pipeline in self.pipelines:
            if pipeline.name == name:
                return pipeline
        return None


__all__: list[str] = [
    "RetryConfig",
    "HttpEndpointConfig",
    "RolloutConfig",
    "PipelineConfig",
    "OrchestratorConfig",
]
