"""CLI utility functions and error handling.

Errors are written as plain text to stderr and every failure class maps to
its own exit code, so CI jobs can branch on why a release did not ship.

Example:
    from shipgate.cli.utils import error_exit, ExitCode

    if decision.blocked:
        error_exit(decision.summary(), exit_code=ExitCode.BLOCKED)
"""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import click

from shipgate.errors import ShipgateError

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes of shipgate commands.

    Aligned with ShipgateError.exit_code of each exception class.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    CONFIG_ERROR = 2
    """Invalid configuration or input."""

    BLOCKED = 3
    """Release blocked by findings."""

    BUILD_FAILED = 4
    """Artifact build or verification failed."""

    DISPATCH_ERROR = 5
    """GitOps dispatch could not be delivered."""

    ROLLOUT_ERROR = 6
    """Rollout could not be actuated."""

    CANCELLED = 7
    """Run superseded by a newer change."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Config not found", path="/path/to/shipgate.yaml")
        # Output: Error: Config not found (path=/path/to/shipgate.yaml)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def exit_for(exc: ShipgateError) -> NoReturn:
    """Report a ShipgateError and exit with its class's exit code."""
    try:
        code = ExitCode(exc.exit_code)
    except ValueError:
        code = ExitCode.GENERAL_ERROR
    error_exit(str(exc), exit_code=code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a result to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print progress to stderr, keeping stdout for results."""
    click.echo(message, err=True)


__all__: list[str] = ["ExitCode", "error", "error_exit", "exit_for", "warn", "success", "info"]
