"""ReleaseOrchestrator: one pipeline run per ChangeEvent.

Run sequence::

    select pipeline -> source scans -> source gate -> build + push
        -> image scans -> ReleaseGate -> GitOps dispatch -> rollout

Findings are handed to the VulnerabilityReporter after each scan stage
without waiting for the upload. A newer ChangeEvent for the same
(service, branch) supersedes a run in progress: the older run's cancel
event is set, its in-flight scans are terminated, its rollout (if any) is
cancelled through the controller, and it ends with status cancelled at its
next checkpoint.

Example:
    >>> orchestrator = ReleaseOrchestrator.from_config(load_config("shipgate.yaml"))
    >>> run = orchestrator.run(change, LocalSourceTree("services/checkout"), "prod")
    >>> run.status
    <PipelineStatus.DEPLOYED: 'deployed'>
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

from shipgate.build import ArtifactBuilder, LocalArtifactRegistry, SourceTree
from shipgate.dispatch import GitOpsDispatcher, HttpGitOpsDispatcher
from shipgate.errors import (
    BuildFailureError,
    ChangeEventConsumedError,
    ConfigurationError,
    FindingsBlockedError,
    InvalidRolloutTransitionError,
    PipelineCancelledError,
    RolloutError,
)
from shipgate.gate import ReleaseGate
from shipgate.reporting import HttpVulnerabilitySink, VulnerabilityReporter
from shipgate.resilience import RetryPolicy
from shipgate.rollout import DeploymentTarget, HttpDeploymentTarget, RolloutRegistry
from shipgate.rollout.controller import RolloutController
from shipgate.scanning import CommandInvoker, FileReportStore, ScanAggregator, ScanRunner
from shipgate.schemas.config import OrchestratorConfig, PipelineConfig
from shipgate.schemas.release import Artifact, ChangeEvent, GateDecision
from shipgate.schemas.rollout import RolloutState, RolloutStatus
from shipgate.schemas.scan import ScanResult, ScanTarget, TargetKind
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

CANCEL_POLL_SECONDS = 0.2


class PipelineStatus(str, Enum):
    """Final status of a pipeline run.

    Attributes:
        SKIPPED: No pipeline applies to the changed paths.
        BLOCKED: A required task blocked the source, image or release gate.
        BUILD_FAILED: The artifact could not be built or verified.
        CANCELLED: Superseded by a newer change for the same service and branch.
        DEPLOYED: Rollout completed.
        ROLLED_BACK: Rollout failed health checks and was rolled back.
        RELEASED: Release gate passed and no rollout is configured.
    """

    SKIPPED = "skipped"
    BLOCKED = "blocked"
    BUILD_FAILED = "build_failed"
    CANCELLED = "cancelled"
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"
    RELEASED = "released"


class PipelineRun(BaseModel):
    """Outcome of one pipeline run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    event: ChangeEvent
    environment: str
    pipeline: str | None = None
    status: PipelineStatus
    source_results: list[ScanResult] = Field(default_factory=list)
    source_decision: GateDecision | None = None
    artifact: Artifact | None = None
    image_results: list[ScanResult] = Field(default_factory=list)
    image_decision: GateDecision | None = None
    release_decision: GateDecision | None = None
    dispatched: bool = False
    rollout: RolloutState | None = None
    error: str | None = None
    started_at: datetime
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def blocking_decision(self) -> GateDecision | None:
        """The decision that blocked the run, if any."""
        for decision in (self.release_decision, self.image_decision, self.source_decision):
            if decision is not None and decision.blocked:
                return decision
        return None


class ReleaseOrchestrator:
    """Runs change events through scanning, build, gating and rollout.

    Attributes:
        config: Orchestrator configuration.
        aggregator: ScanAggregator for both scan stages.
        builder: ArtifactBuilder for builds and image scans.
        reporter: Optional vulnerability reporter (side channel).
        dispatcher: Optional GitOps dispatcher.
        rollouts: Registry owning active rollouts.
        deployment_target: Target for rollouts; required when any pipeline
            configures one.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        aggregator: ScanAggregator,
        builder: ArtifactBuilder,
        reporter: VulnerabilityReporter | None = None,
        dispatcher: GitOpsDispatcher | None = None,
        rollouts: RolloutRegistry | None = None,
        deployment_target: DeploymentTarget | None = None,
    ) -> None:
        if deployment_target is None:
            needing = [p.name for p in config.pipelines if p.rollout is not None]
            if needing:
                raise ConfigurationError(
                    "deployment",
                    f"pipelines {needing} configure a rollout but no deployment target is set",
                )
        self.config = config
        self.aggregator = aggregator
        self.builder = builder
        self.reporter = reporter
        self.dispatcher = dispatcher
        self.rollouts = rollouts or RolloutRegistry()
        self.deployment_target = deployment_target
        self.gate = ReleaseGate()
        self._lock = threading.Lock()
        self._consumed: set[str] = set()
        self._inflight: dict[tuple[str, str], threading.Event] = {}

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> ReleaseOrchestrator:
        """Wire the default collaborators described by config."""
        retry_policy = RetryPolicy(config.retry)
        runner = ScanRunner(
            invoker=CommandInvoker(),
            report_store=FileReportStore(Path(config.report_dir)),
        )
        aggregator = ScanAggregator(
            runner,
            default_threshold=config.default_severity_threshold,
            grace_seconds=config.task_grace_seconds,
        )
        builder = ArtifactBuilder(LocalArtifactRegistry(Path(config.registry_dir)), aggregator)
        reporter = (
            VulnerabilityReporter(
                HttpVulnerabilitySink(config.reporting), retry_policy=retry_policy
            )
            if config.reporting is not None
            else None
        )
        dispatcher = (
            HttpGitOpsDispatcher(config.gitops, retry_policy=retry_policy)
            if config.gitops is not None
            else None
        )
        target = (
            HttpDeploymentTarget(config.deployment) if config.deployment is not None else None
        )
        return cls(
            config,
            aggregator=aggregator,
            builder=builder,
            reporter=reporter,
            dispatcher=dispatcher,
            rollouts=RolloutRegistry(retry_policy=retry_policy),
            deployment_target=target,
        )

    def run(
        self,
        change: ChangeEvent,
        source: SourceTree,
        environment: str = "prod",
    ) -> PipelineRun:
        """Run the pipeline for one change.

        Args:
            change: The triggering event. Each event is consumed once.
            source: Checked-out source tree for the change.
            environment: Rollout environment.

        Returns:
            PipelineRun with the final status.

        Raises:
            ChangeEventConsumedError: If the event was already run.
            DispatchError: If the GitOps dispatch could not be delivered.
            RolloutActuationError: If a rollback could not restore traffic.
        """
        started_at = datetime.now(timezone.utc)
        with self._lock:
            if change.event_id in self._consumed:
                raise ChangeEventConsumedError(change.event_id)
            self._consumed.add(change.event_id)

        log = logger.bind(
            event_id=change.event_id,
            service=change.service,
            commit_sha=change.short_sha,
            branch=change.branch,
        )
        fields: dict[str, Any] = {
            "event": change,
            "environment": environment,
            "started_at": started_at,
        }

        pipeline = self.config.select_pipeline(change.service, change.changed_paths)
        if pipeline is None:
            log.info("pipeline_skipped", changed_paths=change.changed_paths)
            return PipelineRun(status=PipelineStatus.SKIPPED, **fields)
        fields["pipeline"] = pipeline.name

        key = (change.service, change.branch)
        cancel_event = threading.Event()
        with self._lock:
            previous = self._inflight.get(key)
            if previous is not None:
                log.info("pipeline_superseding")
                previous.set()
            self._inflight[key] = cancel_event

        with create_span(
            "shipgate.pipeline.run",
            attributes={
                "service": change.service,
                "commit_sha": change.commit_sha,
                "pipeline": pipeline.name,
                "environment": environment,
            },
        ) as span:
            log.info("pipeline_started", pipeline=pipeline.name, environment=environment)
            try:
                status = self._execute(
                    change, source, environment, pipeline, cancel_event, fields
                )
            except FindingsBlockedError as e:
                log.warning("pipeline_blocked", summary=str(e))
                status = PipelineStatus.BLOCKED
                fields["error"] = str(e)
            except BuildFailureError as e:
                status = PipelineStatus.BUILD_FAILED
                fields["error"] = str(e)
            except PipelineCancelledError as e:
                log.info("pipeline_cancelled", checkpoint=e.checkpoint)
                status = PipelineStatus.CANCELLED
                fields["error"] = str(e)
            finally:
                with self._lock:
                    if self._inflight.get(key) is cancel_event:
                        del self._inflight[key]

            span.set_attribute("status", status.value)
            log.info("pipeline_finished", status=status.value)
            return PipelineRun(status=status, **fields)

    def close(self, wait: bool = True) -> None:
        """Drain pending vulnerability uploads."""
        if self.reporter is not None:
            self.reporter.close(wait=wait)

    def _execute(
        self,
        change: ChangeEvent,
        source: SourceTree,
        environment: str,
        pipeline: PipelineConfig,
        cancel_event: threading.Event,
        fields: dict[str, Any],
    ) -> PipelineStatus:
        log = logger.bind(service=change.service, commit_sha=change.short_sha)

        def checkpoint(name: str) -> None:
            if cancel_event.is_set():
                raise PipelineCancelledError(change.service, change.branch, name)

        checkpoint("source_scan")
        try:
            source_digest = source.digest()
        except OSError as e:
            raise BuildFailureError(change.service, f"cannot read source tree: {e}") from e
        target = ScanTarget(kind=TargetKind.SOURCE, ref=source.ref, digest=source_digest)
        source_results, source_decision = self.aggregator.evaluate(
            pipeline.source_scans, target, cancel_event, stage="source"
        )
        fields["source_results"] = list(source_results)
        fields["source_decision"] = source_decision
        self._report(source_results)
        checkpoint("source_gate")
        if source_decision.blocked:
            raise FindingsBlockedError(source_decision)

        artifact = self.builder.build(change, source)
        fields["artifact"] = artifact
        checkpoint("image_scan")

        record = self.builder.scan_image(artifact, pipeline.image_scans, cancel_event)
        fields["image_results"] = record.image_results
        fields["image_decision"] = record.image_decision
        self._report(record.image_results)
        checkpoint("release_gate")

        release_decision = self.gate.decide(source_decision, record.image_decision)
        fields["release_decision"] = release_decision
        if release_decision.blocked:
            raise FindingsBlockedError(release_decision)
        log.info(
            "release_approved",
            digest=artifact.digest,
            classification=release_decision.classification.value,
        )

        if self.dispatcher is not None:
            self.dispatcher.dispatch(change.service, artifact.digest)
            fields["dispatched"] = True

        if pipeline.rollout is None:
            return PipelineStatus.RELEASED

        checkpoint("rollout")
        plan = pipeline.rollout.build_plan(
            service=change.service,
            environment=environment,
            artifact_digest=artifact.digest,
            version=artifact.version_tag,
        )
        if self.deployment_target is None:
            raise ConfigurationError("deployment", "no deployment target for rollout")
        controller = self.rollouts.acquire(plan, self.deployment_target, supersede=True)
        finished = threading.Event()
        watcher = threading.Thread(
            target=self._watch_cancel,
            args=(cancel_event, controller, finished),
            name=f"shipgate-cancel-{plan.plan_id[:8]}",
            daemon=True,
        )
        watcher.start()
        try:
            state = controller.run()
        finally:
            finished.set()
        fields["rollout"] = state

        if state.status == RolloutStatus.COMPLETED:
            return PipelineStatus.DEPLOYED
        if cancel_event.is_set():
            raise PipelineCancelledError(change.service, change.branch, "rollout")
        return PipelineStatus.ROLLED_BACK

    def _report(self, results: tuple[ScanResult, ...] | list[ScanResult]) -> None:
        if self.reporter is not None:
            self.reporter.submit(results)

    @staticmethod
    def _watch_cancel(
        cancel_event: threading.Event,
        controller: RolloutController,
        finished: threading.Event,
    ) -> None:
        while not finished.is_set() and not controller.wait_until_terminal(
            CANCEL_POLL_SECONDS
        ):
            if not cancel_event.is_set():
                continue
            try:
                controller.cancel("pipeline superseded")
            except InvalidRolloutTransitionError:
                pass  # reached a terminal state first
            except RolloutError as e:
                logger.error(
                    "rollout_cancel_failed",
                    plan_id=controller.plan.plan_id,
                    error=str(e),
                )
            return


__all__: list[str] = ["PipelineStatus", "PipelineRun", "ReleaseOrchestrator"]
