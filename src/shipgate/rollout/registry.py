"""RolloutRegistry: at most one active rollout per (service, environment).

The registry is the single owner of active controllers. A controller is
released automatically when its plan reaches a terminal state. Controllers
for different keys share no mutable state, so they progress independently.

Example:
    >>> registry = RolloutRegistry()
    >>> controller = registry.acquire(plan, target, supersede=True)
    >>> controller.run()
"""

from __future__ import annotations

import threading
import time

import structlog

from shipgate.errors import InvalidRolloutTransitionError, RolloutConflictError
from shipgate.resilience import RetryPolicy
from shipgate.rollout.controller import RolloutController
from shipgate.rollout.target import DeploymentTarget
from shipgate.schemas.rollout import RolloutPlan

logger = structlog.get_logger(__name__)


class RolloutRegistry:
    """Tracks the active RolloutController of each (service, environment)."""

    def __init__(self, *, retry_policy: RetryPolicy | None = None) -> None:
        self.retry_policy = retry_policy
        self._active: dict[tuple[str, str], RolloutController] = {}
        self._lock = threading.Lock()

    def acquire(
        self,
        plan: RolloutPlan,
        target: DeploymentTarget,
        *,
        supersede: bool = False,
        wait_seconds: float | None = None,
    ) -> RolloutController:
        """Register a controller for plan.

        Args:
            plan: Plan to execute.
            target: Deployment target for the controller.
            supersede: Cancel an active plan on the same key first.
            wait_seconds: Wait up to this long for an active plan to finish.

        Returns:
            A new, not yet started RolloutController.

        Raises:
            RolloutConflictError: If the key stays occupied.
        """
        deadline = time.monotonic() + wait_seconds if wait_seconds is not None else None

        while True:
            with self._lock:
                current = self._active.get(plan.key)
                if current is None or current.status.is_terminal:
                    controller = RolloutController(
                        plan,
                        target,
                        retry_policy=self.retry_policy,
                        on_terminal=self.release,
                    )
                    self._active[plan.key] = controller
                    logger.info(
                        "rollout_acquired",
                        plan_id=plan.plan_id,
                        service=plan.service,
                        environment=plan.environment,
                    )
                    return controller

            if supersede:
                logger.info(
                    "rollout_superseding",
                    service=plan.service,
                    environment=plan.environment,
                    active_plan_id=current.plan.plan_id,
                    plan_id=plan.plan_id,
                )
                try:
                    current.cancel(f"superseded by plan {plan.plan_id}")
                except InvalidRolloutTransitionError:
                    pass  # finished on its own meanwhile
                continue

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining > 0 and current.wait_until_terminal(remaining):
                    continue

            raise RolloutConflictError(
                plan.service, plan.environment, current.plan.plan_id
            )

    def release(self, controller: RolloutController) -> None:
        """Drop controller if it is still the active one for its key."""
        with self._lock:
            if self._active.get(controller.plan.key) is controller:
                del self._active[controller.plan.key]
                logger.debug(
                    "rollout_released",
                    plan_id=controller.plan.plan_id,
                    status=controller.status.value,
                )

    def get_active(self, service: str, environment: str) -> RolloutController | None:
        with self._lock:
            return self._active.get((service, environment))


__all__: list[str] = ["RolloutRegistry"]
