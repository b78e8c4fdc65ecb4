"""Release schemas: change events, gate decisions and artifacts.

Key Components:
    ChangeEvent: Trigger for one pipeline run
    GateOutcome: proceed or blocked
    GateClassification: pass, soft_fail or hard_fail
    GateDecision: Derived decision with its ordered reasons
    Artifact: Immutable, content-addressed build output
    ArtifactRecord: Artifact plus its image-scan decision
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from shipgate.schemas.scan import DIGEST_PATTERN, ScanResult


class ChangeEvent(BaseModel):
    """A source change for one service, delivered by the VCS/CI trigger.

    Immutable and consumed once per pipeline run.

    Examples:
        >>> event = ChangeEvent(
        ...     service="checkout-service",
        ...     commit_sha="9fceb02d0ae598e95dc970b74767f19372d61af8",
        ...     changed_paths=["services/checkout/app.py"],
        ... )
        >>> event.branch
        'main'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique id of the event",
    )
    service: str = Field(
        ...,
        min_length=1,
        pattern=r"^[a-z0-9][a-z0-9-]*$",
        description="Service identifier",
    )
    commit_sha: str = Field(
        ...,
        pattern=r"^[0-9a-f]{7,64}$",
        description="Commit SHA of the change",
    )
    branch: str = Field(default="main", min_length=1, description="Source branch")
    changed_paths: list[str] = Field(
        default_factory=list,
        description="Paths touched by the change",
    )
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event was received (UTC)",
    )

    @property
    def short_sha(self) -> str:
        """First 12 characters of the commit SHA."""
        return self.commit_sha[:12]


class GateOutcome(str, Enum):
    """Whether the pipeline may progress."""

    PROCEED = "proceed"
    BLOCKED = "blocked"


class GateClassification(str, Enum):
    """Overall classification of a gate.

    Attributes:
        PASS: No findings and no tool errors.
        SOFT_FAIL: Proceeds, but with non-blocking findings or errors.
        HARD_FAIL: Blocked.
    """

    PASS = "pass"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


class GateDecision(BaseModel):
    """Derived gate decision. Never mutated after creation.

    Attributes:
        outcome: proceed or blocked.
        classification: pass, soft_fail or hard_fail.
        stage: Gate that produced the decision (source, image, release).
        reasons: Ordered blocking results.
        advisories: Ordered non-blocking results with findings or errors.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    outcome: GateOutcome
    classification: GateClassification
    stage: str = Field(..., min_length=1)
    reasons: list[ScanResult] = Field(default_factory=list)
    advisories: list[ScanResult] = Field(default_factory=list)

    @property
    def proceed(self) -> bool:
        """Whether the decision allows progression."""
        return self.outcome == GateOutcome.PROCEED

    @property
    def blocked(self) -> bool:
        """Whether the decision blocks progression."""
        return self.outcome == GateOutcome.BLOCKED

    def summary(self) -> str:
        """Human readable summary listing every reason."""
        head = f"{self.stage} gate {self.outcome.value} ({self.classification.value})"
        if not self.reasons:
            return head
        return head + ": " + "; ".join(r.describe() for r in self.reasons)


class Artifact(BaseModel):
    """Immutable, content-addressed deployable build output."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str = Field(..., min_length=1)
    digest: str = Field(..., pattern=DIGEST_PATTERN)
    version_tag: str = Field(..., min_length=1)
    source_digest: str = Field(..., pattern=DIGEST_PATTERN)
    commit_sha: str = Field(..., min_length=7)
    size_bytes: int = Field(default=0, ge=0)


class ArtifactRecord(BaseModel):
    """An artifact with the outcome of its image scan.

    A Blocked image decision leaves the record in place for forensic
    inspection with deployable=False and no further lifecycle.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    artifact: Artifact
    image_results: list[ScanResult] = Field(default_factory=list)
    image_decision: GateDecision
    deployable: bool


__all__: list[str] = [
    "ChangeEvent",
    "GateOutcome",
    "GateClassification",
    "GateDecision",
    "Artifact",
    "ArtifactRecord",
]
