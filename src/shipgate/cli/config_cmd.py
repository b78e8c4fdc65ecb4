"""`shipgate config`: configuration commands.

Example:
    $ shipgate config validate --config shipgate.yaml
"""

from __future__ import annotations

from pathlib import Path

import click

from shipgate.cli.utils import exit_for, success
from shipgate.config import load_config
from shipgate.errors import ShipgateError


@click.group(name="config", help="Configuration commands.")
def config_group() -> None:
    """Configuration command group."""
    pass


@config_group.command(name="validate", help="Load and validate a configuration file.")
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the shipgate configuration file.",
    metavar="PATH",
)
def validate_command(config_path: Path) -> None:
    """Validate configuration and list its pipelines."""
    try:
        config = load_config(config_path)
    except ShipgateError as e:
        exit_for(e)

    success(f"Configuration valid: {config_path}")
    for pipeline in config.pipelines:
        rollout = pipeline.rollout.strategy.value if pipeline.rollout else "none"
        success(
            f"  {pipeline.name}: {len(pipeline.source_scans)} source scan(s), "
            f"{len(pipeline.image_scans)} image scan(s), rollout={rollout}"
        )


__all__: list[str] = ["config_group"]
