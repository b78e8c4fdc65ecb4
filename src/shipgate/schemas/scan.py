"""Scan schemas: tasks, targets, normalized findings and results.

Key Components:
    Severity: Ordered finding severity (INFO < LOW < MEDIUM < HIGH < CRITICAL)
    ScanStage: Pipeline stage a task belongs to (source, image)
    ScanTask: One configured tool invocation with its gating flags
    ScanTarget: What a task scans (source tree or artifact)
    Finding: One normalized finding produced by an adapter
    SeverityHistogram: Finding counts per severity
    ScanStatus: success, findings or tool_error
    ScanResult: Immutable outcome of one ScanTask against one ScanTarget

Example:
    >>> task = ScanTask(
    ...     task_id="gitleaks",
    ...     tool="gitleaks",
    ...     command=["gitleaks", "detect", "--source", "${TARGET}"],
    ...     report_format="gitleaks",
    ...     fail_closed=True,
    ... )
    >>> task.required
    True
"""

from __future__ import annotations

import shlex
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TARGET_PLACEHOLDER = "${TARGET}"
"""Placeholder substituted with ScanTarget.ref in task commands."""

DIGEST_PATTERN = r"^sha256:[a-f0-9]{64}$"


class Severity(str, Enum):
    """Normalized finding severity.

    Tool specific levels are mapped onto these five values by the adapters.
    Unknown levels normalize to INFO.

    Examples:
        >>> Severity.HIGH.rank > Severity.MEDIUM.rank
        True
        >>> Severity.parse("Critical")
        <Severity.CRITICAL: 'CRITICAL'>
    """

    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Position of this severity in the ordering (INFO is 0)."""
        return _SEVERITY_ORDER.index(self)

    def at_least(self, threshold: Severity) -> bool:
        """Whether this severity is at or above the threshold."""
        return self.rank >= threshold.rank

    @classmethod
    def parse(cls, value: str | None) -> Severity:
        """Parse a tool severity label, falling back to INFO."""
        if not value:
            return cls.INFO
        label = value.strip().upper()
        aliases = {
            "ERROR": cls.HIGH,
            "WARNING": cls.MEDIUM,
            "NOTE": cls.LOW,
            "NONE": cls.INFO,
            "NEGLIGIBLE": cls.INFO,
            "UNKNOWN": cls.INFO,
        }
        if label in aliases:
            return aliases[label]
        try:
            return cls(label)
        except ValueError:
            return cls.INFO


_SEVERITY_ORDER: list[Severity] = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class ScanStage(str, Enum):
    """Pipeline stage of a scan task."""

    SOURCE = "source"
    IMAGE = "image"


class ScanTask(BaseModel):
    """One configured scanner invocation.

    Required tasks gate the pipeline; advisory tasks (required=False) are run
    and reported but never block. A fail_closed task turns a tool error into
    a blocking result.

    Attributes:
        task_id: Unique id of the task within its stage.
        tool: Tool identifier (informational, never branched on).
        command: Argument vector; ${TARGET} is replaced with the target ref.
        report_format: Name of the FindingsAdapter that parses the output.
        stage: Pipeline stage the task runs in.
        required: Whether the task gates the pipeline.
        fail_closed: Whether a tool error blocks a required task.
        severity_threshold: Minimum blocking severity (None uses the default).
        timeout_seconds: Per-task timeout.
        accepted_exit_codes: Exit codes that mean "the tool ran". None
            defers to the adapter.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str = Field(
        ...,
        min_length=1,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$",
        description="Unique task id within its stage",
    )
    tool: str = Field(..., min_length=1, description="Tool identifier")
    command: list[str] = Field(
        ...,
        min_length=1,
        description="Argument vector with optional ${TARGET} placeholder",
    )
    report_format: str = Field(..., min_length=1, description="Adapter name")
    stage: ScanStage = Field(default=ScanStage.SOURCE, description="Pipeline stage")
    required: bool = Field(default=True, description="Whether the task gates")
    fail_closed: bool = Field(
        default=False,
        description="Treat a tool error as blocking",
    )
    severity_threshold: Severity | None = Field(
        default=None,
        description="Minimum blocking severity; None uses the configured default",
    )
    timeout_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Per-task timeout in seconds",
    )
    accepted_exit_codes: list[int] | None = Field(
        default=None,
        description="Exit codes treated as a completed run",
    )

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v: Any) -> Any:
        """Accept a shell-style string as well as an argument list."""
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("severity_threshold", mode="before")
    @classmethod
    def normalize_threshold(cls, v: Any) -> Any:
        """Accept severity labels in any case."""
        if isinstance(v, str):
            return v.upper()
        return v

    def render_command(self, target_ref: str) -> list[str]:
        """Return the argument vector with the target substituted."""
        return [arg.replace(TARGET_PLACEHOLDER, target_ref) for arg in self.command]


class TargetKind(str, Enum):
    """Kind of scan target."""

    SOURCE = "source"
    ARTIFACT = "artifact"


class ScanTarget(BaseModel):
    """What a scan task runs against.

    Attributes:
        kind: Source tree or built artifact.
        ref: Path of the source tree or image reference of the artifact.
        digest: Content digest identifying the target.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: TargetKind = Field(..., description="Target kind")
    ref: str = Field(..., min_length=1, description="Path or image reference")
    digest: str = Field(..., pattern=DIGEST_PATTERN, description="Content digest")


class Finding(BaseModel):
    """One normalized finding."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(..., min_length=1, description="CVE, rule or secret id")
    severity: Severity = Field(..., description="Normalized severity")
    message: str = Field(default="", description="Short description")
    location: str | None = Field(default=None, description="File, package or path")


class SeverityHistogram(BaseModel):
    """Finding counts per severity.

    Examples:
        >>> hist = SeverityHistogram(critical=1, high=2, low=4)
        >>> hist.total
        7
        >>> hist.at_or_above(Severity.HIGH)
        3
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    critical: int = Field(default=0, ge=0)
    high: int = Field(default=0, ge=0)
    medium: int = Field(default=0, ge=0)
    low: int = Field(default=0, ge=0)
    info: int = Field(default=0, ge=0)

    @classmethod
    def from_findings(cls, findings: list[Finding]) -> SeverityHistogram:
        """Count findings per severity."""
        counts = {severity: 0 for severity in Severity}
        for finding in findings:
            counts[finding.severity] += 1
        return cls(**{severity.value.lower(): n for severity, n in counts.items()})

    def count(self, severity: Severity) -> int:
        """Number of findings at exactly this severity."""
        return int(getattr(self, severity.value.lower()))

    def at_or_above(self, threshold: Severity) -> int:
        """Number of findings at or above the threshold."""
        return sum(self.count(s) for s in Severity if s.at_least(threshold))

    @property
    def total(self) -> int:
        """Total count of all findings."""
        return sum(self.count(s) for s in Severity)

    def __str__(self) -> str:
        parts = [
            f"{s.value}={self.count(s)}"
            for s in reversed(_SEVERITY_ORDER)
            if self.count(s)
        ]
        return " ".join(parts) or "none"


class ScanStatus(str, Enum):
    """Outcome class of a scan task."""

    SUCCESS = "success"
    FINDINGS = "findings"
    TOOL_ERROR = "tool_error"


class ScanResult(BaseModel):
    """Immutable outcome of one ScanTask against one ScanTarget.

    Attributes:
        task_id: Task that produced the result.
        tool: Tool identifier of the task.
        target_digest: Digest of the scanned target.
        status: success, findings or tool_error.
        histogram: Severity counts (set when status is findings).
        findings: Normalized findings.
        error: Failure description (set when status is tool_error).
        raw_report_ref: Durable location of the raw tool report.
        report_digest: sha256 digest of the raw report bytes.
        duration_ms: Wall clock duration of the task.
        timestamp: When the result was produced (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str = Field(..., min_length=1)
    tool: str = Field(..., min_length=1)
    target_digest: str = Field(..., pattern=DIGEST_PATTERN)
    status: ScanStatus
    histogram: SeverityHistogram | None = Field(default=None)
    findings: list[Finding] = Field(default_factory=list)
    error: str | None = Field(default=None)
    raw_report_ref: str | None = Field(default=None)
    report_digest: str | None = Field(default=None)
    duration_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identity(self) -> tuple[str, str]:
        """Key identifying the result within a release: (task_id, target_digest)."""
        return (self.task_id, self.target_digest)

    def describe(self) -> str:
        """One line description used in gate summaries."""
        if self.status == ScanStatus.FINDINGS and self.histogram is not None:
            return f"{self.task_id} [findings: {self.histogram}]"
        if self.status == ScanStatus.TOOL_ERROR:
            return f"{self.task_id} [tool_error: {self.error or 'unknown error'}]"
        return f"{self.task_id} [success]"


__all__: list[str] = [
    "TARGET_PLACEHOLDER",
    "DIGEST_PATTERN",
    "Severity",
    "ScanStage",
    "ScanTask",
    "TargetKind",
    "ScanTarget",
    "Finding",
    "SeverityHistogram",
    "ScanStatus",
    "ScanResult",
]
