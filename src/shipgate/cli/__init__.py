"""shipgate command line interface."""

from __future__ import annotations

from shipgate.cli.main import cli, main

__all__: list[str] = ["cli", "main"]
