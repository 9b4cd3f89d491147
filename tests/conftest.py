"""Pytest configuration for the test-run-mcp test suite."""

from __future__ import annotations

import pytest

from testrunmcp.container import reset_container


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: tests that wire several components together",
    )


@pytest.fixture(autouse=True)
def isolated_container():
    """Give every test a fresh service container singleton."""
    reset_container()
    yield
    reset_container()
