"""Unit tests for the GitOps dispatcher."""

from __future__ import annotations

import json

import httpx
import pytest

from shipgate.dispatch import HttpGitOpsDispatcher, idempotency_key
from shipgate.errors import DispatchError
from shipgate.resilience import RetryPolicy
from shipgate.schemas.config import HttpEndpointConfig

DIGEST = "sha256:" + "d" * 64
CONFIG = HttpEndpointConfig(url="https://gitops.example.com/dispatch")


class TestHttpGitOpsDispatcher:
    """Dispatch delivery against a mock transport."""

    @pytest.mark.requirement("gitops-dispatch")
    def test_dispatch_payload_and_key(self, fast_retry: RetryPolicy) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        dispatcher = HttpGitOpsDispatcher(
            CONFIG, retry_policy=fast_retry, transport=httpx.MockTransport(handler)
        )

        dispatcher.dispatch("checkout-service", DIGEST)
        dispatcher.close()

        assert len(requests) == 1
        assert json.loads(requests[0].content) == {"service": "checkout-service", "digest": DIGEST}
        assert requests[0].headers["Idempotency-Key"] == f"checkout-service:{DIGEST}"
        assert idempotency_key("checkout-service", DIGEST) == f"checkout-service:{DIGEST}"

    @pytest.mark.requirement("gitops-dispatch")
    def test_retries_keep_same_key(self, fast_retry: RetryPolicy) -> None:
        keys: list[str] = []
        statuses = iter([502, 503, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            return httpx.Response(next(statuses))

        dispatcher = HttpGitOpsDispatcher(
            CONFIG, retry_policy=fast_retry, transport=httpx.MockTransport(handler)
        )

        dispatcher.dispatch("checkout-service", DIGEST)

        assert keys == [f"checkout-service:{DIGEST}"] * 3

    @pytest.mark.requirement("gitops-dispatch")
    def test_exhausted_retries_raise(self, fast_retry: RetryPolicy) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = HttpGitOpsDispatcher(
            CONFIG, retry_policy=fast_retry, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(DispatchError) as exc_info:
            dispatcher.dispatch("checkout-service", DIGEST)

        assert exc_info.value.exit_code == 5
        assert exc_info.value.digest == DIGEST

    @pytest.mark.requirement("gitops-dispatch")
    def test_rejected_dispatch_not_retried(self, fast_retry: RetryPolicy) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(422)

        dispatcher = HttpGitOpsDispatcher(
            CONFIG, retry_policy=fast_retry, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(DispatchError, match="422"):
            dispatcher.dispatch("checkout-service", DIGEST)
        assert len(calls) == 1
