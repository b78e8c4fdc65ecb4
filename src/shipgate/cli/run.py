"""`shipgate run`: run one change through the full release pipeline.

Example:
    $ shipgate run --config shipgate.yaml --service checkout-service \\
        --commit 9fceb02d0ae5 --path services/checkout/app.py --source ./checkout
"""

from __future__ import annotations

from pathlib import Path

import click

from shipgate.build import LocalSourceTree
from shipgate.cli.utils import ExitCode, error_exit, exit_for, info, success, warn
from shipgate.config import load_config
from shipgate.errors import ShipgateError
from shipgate.pipeline import PipelineRun, PipelineStatus, ReleaseOrchestrator
from shipgate.schemas.release import ChangeEvent
from shipgate.schemas.rollout import RollbackReport

_STATUS_EXIT_CODES: dict[PipelineStatus, ExitCode] = {
    PipelineStatus.BLOCKED: ExitCode.BLOCKED,
    PipelineStatus.BUILD_FAILED: ExitCode.BUILD_FAILED,
    PipelineStatus.CANCELLED: ExitCode.CANCELLED,
}


def _format_rollback(report: RollbackReport) -> list[str]:
    """Stage, weight and health values of a rollback."""
    kind = "automatic" if report.automatic else "manual"
    lines = [
        f"  rollback ({kind}): {report.reason}",
        f"    stage {report.stage_index} at {report.weight_at_failure}%",
    ]
    lines.extend(f"    violation: {violation}" for violation in report.violations)
    if report.signals is not None:
        lines.append(f"    error rate: {report.signals.error_rate:.4f}")
        lines.extend(
            f"    {percentile} latency: {value:.1f}ms"
            for percentile, value in sorted(report.signals.latency_percentiles.items())
        )
    return lines


def _format_run(run: PipelineRun, output_format: str) -> str:
    """Format a PipelineRun for CLI output."""
    if output_format == "json":
        return run.model_dump_json(indent=2)

    lines = [
        "",
        f"Run ID:        {run.run_id}",
        f"Service:       {run.event.service}",
        f"Commit:        {run.event.short_sha}",
        f"Pipeline:      {run.pipeline or '-'}",
        f"Status:        {run.status.value}",
    ]
    for label, decision in (
        ("Source gate", run.source_decision),
        ("Image gate", run.image_decision),
        ("Release gate", run.release_decision),
    ):
        if decision is not None:
            lines.append(
                f"{label + ':':<15}{decision.outcome.value} ({decision.classification.value})"
            )
            lines.extend(f"  - {r.describe()}" for r in decision.reasons)
    if run.artifact is not None:
        lines.append(f"Artifact:      {run.artifact.digest}")
    if run.rollout is not None:
        lines.append(
            f"Rollout:       {run.rollout.status.value} at {run.rollout.current_weight}%"
        )
        if run.rollout.rollback is not None:
            lines.extend(_format_rollback(run.rollout.rollback))
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="run",
    help="Run a change through scanning, build, gating and rollout.",
    epilog="""
Exit Codes:
    0  - Released, deployed or rolled back
    2  - Configuration error
    3  - Blocked by findings
    4  - Build failed
    5  - GitOps dispatch failed
    6  - Rollout error
    7  - Cancelled
""",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the shipgate configuration file.",
    metavar="PATH",
)
@click.option("--service", required=True, help="Service identifier.")
@click.option("--commit", "commit_sha", required=True, help="Commit SHA of the change.")
@click.option("--branch", default="main", show_default=True, help="Source branch.")
@click.option(
    "--path",
    "changed_paths",
    multiple=True,
    help="Changed path (repeatable).",
    metavar="PATH",
)
@click.option(
    "--source",
    "source_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Checked-out source tree of the service.",
    metavar="DIR",
)
@click.option("--environment", "-e", default="prod", show_default=True, help="Rollout environment.")
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def run_command(
    config_path: Path,
    service: str,
    commit_sha: str,
    branch: str,
    changed_paths: tuple[str, ...],
    source_dir: Path,
    environment: str,
    output: str,
) -> None:
    """Run the release pipeline for one change."""
    try:
        config = load_config(config_path)
        change = ChangeEvent(
            service=service,
            commit_sha=commit_sha,
            branch=branch,
            changed_paths=list(changed_paths),
        )
        orchestrator = ReleaseOrchestrator.from_config(config)
    except ShipgateError as e:
        exit_for(e)
    except ValueError as e:
        error_exit(f"Invalid change event: {e}", exit_code=ExitCode.CONFIG_ERROR)

    info(f"Running pipeline for {service}")
    try:
        run = orchestrator.run(change, LocalSourceTree(source_dir), environment)
    except ShipgateError as e:
        exit_for(e)
    finally:
        orchestrator.close()

    success(_format_run(run, output))

    if run.status == PipelineStatus.SKIPPED:
        warn("No pipeline matches the changed paths", service=service)
    elif run.status == PipelineStatus.ROLLED_BACK:
        warn("Rollout rolled back after a health regression", service=service)

    code = _STATUS_EXIT_CODES.get(run.status)
    if code is not None:
        error_exit(run.error or run.status.value, exit_code=code)


__all__: list[str] = ["run_command"]
