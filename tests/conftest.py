"""Shared pytest configuration for shipgate tests.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Generator


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requirement(id): Mark test as covering a specific requirement",
    )


@pytest.fixture(autouse=True)
def reset_tracing() -> Generator[None, None, None]:
    """Drop any tracer a test injected."""
    from shipgate.telemetry.tracing import reset_tracer

    reset_tracer()
    yield
    reset_tracer()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Undo configure_logging() so no test keeps writing to a stale stream."""
    import structlog

    yield
    structlog.reset_defaults()
