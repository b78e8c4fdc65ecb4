"""Pydantic v2 schemas for shipgate.

Modules:
    scan: ScanTask, ScanTarget, ScanResult and normalized findings
    release: ChangeEvent, GateDecision, Artifact
    rollout: RolloutPlan, RolloutState and health signals
    config: OrchestratorConfig loaded from YAML

Example:
    >>> import yaml
    >>> from shipgate.schemas import OrchestratorConfig
    >>> with open("shipgate.yaml") as f:
    ...     data = yaml.safe_load(f)
    >>> config = OrchestratorConfig.model_validate(data)
"""

from __future__ import annotations

from shipgate.schemas.config import (
    HttpEndpointConfig,
    OrchestratorConfig,
    PipelineConfig,
    RetryConfig,
    RolloutConfig,
)
from shipgate.schemas.release import (
    Artifact,
    ArtifactRecord,
    ChangeEvent,
    GateClassification,
    GateDecision,
    GateOutcome,
)
from shipgate.schemas.rollout import (
    HealthSignals,
    RollbackReport,
    RolloutPlan,
    RolloutStage,
    RolloutState,
    RolloutStatus,
    RolloutStrategy,
    RolloutTransition,
    SuccessCriteria,
)
from shipgate.schemas.scan import (
    Finding,
    ScanResult,
    ScanStage,
    ScanStatus,
    ScanTarget,
    ScanTask,
    Severity,
    SeverityHistogram,
    TargetKind,
)

__all__: list[str] = [
    # config
    "HttpEndpointConfig",
    "OrchestratorConfig",
    "PipelineConfig",
    "RetryConfig",
    "RolloutConfig",
    # release
    "Artifact",
    "ArtifactRecord",
    "ChangeEvent",
    "GateClassification",
    "GateDecision",
    "GateOutcome",
    # rollout
    "HealthSignals",
    "RollbackReport",
    "RolloutPlan",
    "RolloutStage",
    "RolloutState",
    "RolloutStatus",
    "RolloutStrategy",
    "RolloutTransition",
    "SuccessCriteria",
    # scan
    "Finding",
    "ScanResult",
    "ScanStage",
    "ScanStatus",
    "ScanTarget",
    "ScanTask",
    "Severity",
    "SeverityHistogram",
    "TargetKind",
]
