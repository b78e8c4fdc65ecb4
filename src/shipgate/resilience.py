"""Retry policy for outbound collaborator calls.

Used by the VulnerabilityReporter (sink uploads), the GitOps dispatcher
(at-least-once delivery) and the RolloutController (weight restoration
during rollback).

Retry Timeline (default config):
    - Attempt 1: Immediate
    - Attempt 2: ~0.5s delay (with jitter)
    - Attempt 3: ~1s delay (with jitter)

Example:
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3))
    >>>
    >>> @policy.wrap
    ... def upload():
    ...     return sink.upload(batch)
"""

from __future__ import annotations

import functools
import random
import threading
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import httpx
import structlog

from shipgate.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_RETRYABLE: tuple[type[Exception], ...] = (
    httpx.TransportError,
    httpx.HTTPStatusError,
    ConnectionError,
    TimeoutError,
)


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on. Defaults to
                httpx transport/status errors, ConnectionError, TimeoutError.
            sleep: Delay function (injectable for tests).
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or DEFAULT_RETRYABLE
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry following a 0-indexed attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_ms, with optional ±25% jitter.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check if exception is retryable.

        HTTP status errors are only retried for 429 and 5xx responses.
        """
        if isinstance(exception, httpx.HTTPStatusError):
            status = exception.response.status_code
            return status == 429 or status >= 500
        return isinstance(exception, self._retryable_exceptions)

    def call(
        self,
        func: Callable[[], T],
        *,
        operation: str = "call",
        stop: threading.Event | None = None,
    ) -> T:
        """Call func, retrying retryable failures.

        Args:
            func: Zero-argument callable.
            operation: Name used in log events.
            stop: Optional event; when set, no further attempts are made.

        Returns:
            The result of the first successful attempt.

        Raises:
            Exception: The last exception once attempts are exhausted, or the
                first non-retryable exception.
        """
        max_attempts = self._config.max_attempts
        for attempt in range(max_attempts):
            try:
                return func()
            except Exception as e:
                if not self.should_retry(e):
                    raise
                remaining = max_attempts - attempt - 1
                if remaining == 0 or (stop is not None and stop.is_set()):
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)
        raise RuntimeError("Retry exhausted without exception")

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator form of call()."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(lambda: func(*args, **kwargs), operation=func.__name__)

        return wrapper


__all__: list[str] = ["DEFAULT_RETRYABLE", "RetryPolicy"]
