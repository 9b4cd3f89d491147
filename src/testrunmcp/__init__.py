"""Test Run MCP Server - dependency-aware batch orchestration of test runs."""

from testrunmcp.domains.batch_execution import (  # noqa: F401
    BatchCoordinator,
    BatchResult,
    BatchSpec,
    RunSpec,
)

__all__ = ["BatchCoordinator", "BatchResult", "BatchSpec", "RunSpec"]

__version__ = "0.1.0"
