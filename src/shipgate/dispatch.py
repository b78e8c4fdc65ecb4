"""GitOps dispatch: tell the GitOps system which digest to deploy.

The dispatch is an outbound call with at-least-once delivery. Every attempt
carries the idempotency key ``<service>:<digest>`` so the receiver can
discard replays.

Example:
    >>> dispatcher = HttpGitOpsDispatcher(config.gitops)
    >>> dispatcher.dispatch("checkout-service", artifact.digest)
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from shipgate.errors import DispatchError
from shipgate.resilience import RetryPolicy
from shipgate.schemas.config import HttpEndpointConfig
from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def idempotency_key(service: str, digest: str) -> str:
    """Receiver-side de-duplication key of a dispatch."""
    return f"{service}:{digest}"


class GitOpsDispatcher(Protocol):
    """Triggers the GitOps system for a released artifact."""

    def dispatch(self, service: str, digest: str) -> None:
        """Deliver ``{service, digest}``; raise DispatchError on failure."""
        ...


class HttpGitOpsDispatcher:
    """Posts ``{"service": ..., "digest": ...}`` to a GitOps endpoint."""

    def __init__(
        self,
        config: HttpEndpointConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = httpx.Client(
            timeout=config.timeout_seconds,
            headers=config.headers,
            transport=transport,
        )

    def dispatch(self, service: str, digest: str) -> None:
        key = idempotency_key(service, digest)
        log = logger.bind(service=service, digest=digest)

        def _post() -> None:
            response = self._client.post(
                self.config.url,
                json={"service": service, "digest": digest},
                headers={"Idempotency-Key": key},
            )
            response.raise_for_status()

        with create_span(
            "shipgate.gitops.dispatch",
            attributes={"service": service, "digest": digest},
        ):
            try:
                self.retry_policy.call(_post, operation="gitops_dispatch")
            except (httpx.HTTPError, OSError) as e:
                log.error("gitops_dispatch_failed", error=str(e))
                raise DispatchError(service, digest, sanitize_error_message(str(e))) from e
            log.info("gitops_dispatched", idempotency_key=key)

    def close(self) -> None:
        self._client.close()


__all__: list[str] = ["idempotency_key", "GitOpsDispatcher", "HttpGitOpsDispatcher"]
