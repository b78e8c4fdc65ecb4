"""Progressive rollouts: controller, registry and deployment targets."""

from __future__ import annotations

from shipgate.rollout.controller import RolloutController
from shipgate.rollout.registry import RolloutRegistry
from shipgate.rollout.target import DeploymentTarget, HttpDeploymentTarget

__all__: list[str] = [
    "RolloutController",
    "RolloutRegistry",
    "DeploymentTarget",
    "HttpDeploymentTarget",
]
