"""OpenTelemetry tracing utilities for shipgate.

Provides the @traced decorator and the create_span() context manager used
to instrument scans, gates, builds and rollouts. Span names follow
``shipgate.<component>.<operation>``.

Exceptions are recorded on the span with messages passed through
sanitize_error_message() so that credentials echoed by scanners or HTTP
collaborators never reach the trace backend.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode, Tracer

from shipgate.telemetry.sanitization import sanitize_error_message
from shipgate.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from shipgate.telemetry.tracer_factory import reset_tracer
from shipgate.telemetry.tracer_factory import set_tracer as _factory_set_tracer

__all__ = ["traced", "create_span", "get_tracer", "set_tracer", "reset_tracer"]

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "shipgate"


def get_tracer() -> Tracer:
    """Get the shipgate tracer (indirection allows tests to inject one)."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the shipgate tracer (for testing)."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, exc: Exception) -> None:
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace a function with an OpenTelemetry span.

    Can be used with or without arguments:
        @traced
        def decide(...): ...

        @traced(name="shipgate.gate.decide", attributes={"gate": "release"})
        def decide(...): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Span name. Defaults to the function name.
        attributes: Static attributes set on every invocation.
        attributes_fn: Callable receiving the function's arguments and
            returning dynamic attributes. Failures are logged and ignored.

    Returns:
        Decorated function that creates a span on each invocation.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer()
            with tracer.start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                for key, value in (attributes or {}).items():
                    span.set_attribute(key, value)
                if attributes_fn is not None:
                    try:
                        for key, value in attributes_fn(*args, **kwargs).items():
                            span.set_attribute(key, value)
                    except Exception:
                        logger.warning(
                            "attributes_fn failed for span %s",
                            span_name,
                            exc_info=True,
                        )
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically.

    Examples:
        >>> with create_span("shipgate.scan.aggregate", attributes={"task_count": 4}) as span:
        ...     span.set_attribute("outcome", "proceed")
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise
