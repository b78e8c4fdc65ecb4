"""Main entry point for the shipgate CLI.

Commands:
    shipgate run: Full release pipeline for one change
    shipgate scan: Source-stage scans only
    shipgate config validate: Validate a configuration file

Example:
    $ shipgate --help
    $ shipgate run --config shipgate.yaml --service checkout-service --commit 9fceb02 \\
        --path services/checkout/app.py --source ./checkout
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from shipgate.cli.config_cmd import config_group
from shipgate.cli.run import run_command
from shipgate.cli.scan import scan_command
from shipgate.config import logging_settings
from shipgate.telemetry.logging import configure_logging


def _get_version() -> str:
    """Package version, or 'unknown' if not installed."""
    try:
        return get_version("shipgate")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="shipgate",
    help="shipgate - security-gated release orchestrator.",
    epilog="Use 'shipgate <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(
    version=_get_version(),
    prog_name="shipgate",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (default: $SHIPGATE_LOG_LEVEL or INFO).",
)
@click.option(
    "--json-logs/--console-logs",
    default=None,
    help="Log format (default: $SHIPGATE_LOG_JSON).",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, json_logs: bool | None) -> None:
    """Root command group for the shipgate CLI."""
    ctx.ensure_object(dict)
    settings = logging_settings()
    try:
        configure_logging(
            log_level=(log_level or settings.level).upper(),
            json_output=settings.json_output if json_logs is None else json_logs,
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--log-level") from e


cli.add_command(run_command)
cli.add_command(scan_command)
cli.add_command(config_group)


def main(argv: list[str] | None = None) -> None:
    """Console entry point.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
