"""Deployment targets: where traffic weights are set and health is sampled.

HTTP API used by HttpDeploymentTarget::

    PUT  {url}/services/{service}/traffic
         {"version": "...", "weight": 10}
    GET  {url}/services/{service}/versions/{version}/health?window_seconds=300
         -> {"error_rate": 0.001, "latency_percentiles": {"p99": 120.0}}
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from shipgate.schemas.config import HttpEndpointConfig
from shipgate.schemas.rollout import HealthSignals

logger = structlog.get_logger(__name__)


class DeploymentTarget(Protocol):
    """Traffic router and health source for deployed versions."""

    def set_traffic_weight(self, service: str, version: str, weight: int) -> None:
        """Route weight percent of traffic to version."""
        ...

    def get_health_signals(
        self, service: str, version: str, window_seconds: float
    ) -> HealthSignals:
        """Sample health of version over the last window_seconds."""
        ...


class HttpDeploymentTarget:
    """DeploymentTarget backed by an HTTP traffic-management API."""

    def __init__(
        self,
        config: HttpEndpointConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.Client(
            base_url=config.url,
            timeout=config.timeout_seconds,
            headers=config.headers,
            transport=transport,
        )

    def set_traffic_weight(self, service: str, version: str, weight: int) -> None:
        response = self._client.put(
            f"/services/{service}/traffic",
            json={"version": version, "weight": weight},
        )
        response.raise_for_status()
        logger.debug("traffic_weight_set", service=service, version=version, weight=weight)

    def get_health_signals(
        self, service: str, version: str, window_seconds: float
    ) -> HealthSignals:
        response = self._client.get(
            f"/services/{service}/versions/{version}/health",
            params={"window_seconds": window_seconds},
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(
                f"health response for {service} must be a JSON object, "
                f"got {type(data).__name__}"
            )
        return HealthSignals.model_validate(
            {
                "error_rate": data.get("error_rate"),
                "latency_percentiles": data.get("latency_percentiles") or {},
            }
        )

    def close(self) -> None:
        self._client.close()


__all__: list[str] = ["DeploymentTarget", "HttpDeploymentTarget"]
