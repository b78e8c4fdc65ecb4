"""shipgate: security-gated release orchestrator.

A change event is scanned concurrently at the source stage, built into a
content-addressed artifact, scanned again as an image, gated, dispatched to
GitOps and rolled out progressively with automatic rollback.

Example:
    >>> from shipgate import ReleaseOrchestrator, load_config
    >>> orchestrator = ReleaseOrchestrator.from_config(load_config("shipgate.yaml"))
"""

from __future__ import annotations

from shipgate.config import load_config
from shipgate.errors import ShipgateError
from shipgate.gate import ReleaseGate, classify
from shipgate.pipeline import PipelineRun, PipelineStatus, ReleaseOrchestrator

__version__ = "0.1.0"

__all__: list[str] = [
    "__version__",
    "load_config",
    "ShipgateError",
    "ReleaseGate",
    "classify",
    "PipelineRun",
    "PipelineStatus",
    "ReleaseOrchestrator",
]
