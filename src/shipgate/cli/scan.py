"""`shipgate scan`: run a pipeline's source-stage scans against a tree.

Nothing is built, reported or deployed; the command prints the results and
the source GateDecision and exits 3 when the gate blocks.

Example:
    $ shipgate scan --config shipgate.yaml --pipeline checkout --source ./checkout
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from shipgate.build import LocalSourceTree
from shipgate.cli.utils import ExitCode, error_exit, exit_for, info, success
from shipgate.config import load_config
from shipgate.errors import ShipgateError
from shipgate.scanning import FileReportStore, ScanAggregator, ScanRunner
from shipgate.schemas.release import GateDecision
from shipgate.schemas.scan import ScanResult, ScanTarget, TargetKind


def _format_scan(
    results: tuple[ScanResult, ...], decision: GateDecision, output_format: str
) -> str:
    if output_format == "json":
        payload = {
            "results": [r.model_dump(mode="json") for r in results],
            "decision": decision.model_dump(mode="json"),
        }
        return json.dumps(payload, indent=2)

    lines = [""]
    for result in results:
        detail = result.error if result.error else str(result.histogram or "none")
        lines.append(f"{result.task_id:<24}{result.status.value:<12}{detail}")
    lines.append("")
    lines.append(decision.summary())
    return "\n".join(lines)


@click.command(name="scan", help="Run source-stage scans and print the gate decision.")
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the shipgate configuration file.",
    metavar="PATH",
)
@click.option("--pipeline", "pipeline_name", required=True, help="Pipeline name.")
@click.option(
    "--source",
    "source_dir",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Source tree to scan.",
    metavar="DIR",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def scan_command(config_path: Path, pipeline_name: str, source_dir: Path, output: str) -> None:
    """Run the source scans of one pipeline."""
    try:
        config = load_config(config_path)
    except ShipgateError as e:
        exit_for(e)

    pipeline = config.get_pipeline(pipeline_name)
    if pipeline is None:
        error_exit(
            "Unknown pipeline",
            exit_code=ExitCode.CONFIG_ERROR,
            pipeline=pipeline_name,
        )

    source = LocalSourceTree(source_dir)
    target = ScanTarget(kind=TargetKind.SOURCE, ref=source.ref, digest=source.digest())
    aggregator = ScanAggregator(
        ScanRunner(report_store=FileReportStore(Path(config.report_dir))),
        default_threshold=config.default_severity_threshold,
        grace_seconds=config.task_grace_seconds,
    )

    info(f"Scanning {source.ref} with {len(pipeline.source_scans)} task(s)")
    results, decision = aggregator.evaluate(pipeline.source_scans, target, stage="source")
    success(_format_scan(results, decision, output))

    if decision.blocked:
        sys.exit(ExitCode.BLOCKED)


__all__: list[str] = ["scan_command"]
