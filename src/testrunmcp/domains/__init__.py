"""Domain-Driven Design bounded contexts for test-run-mcp.

- Batch Execution Context: dependency-aware batch orchestration of test runs
- Shared Kernel: tool parameter types
"""

from testrunmcp.domains.batch_execution import (
    BatchCoordinator,
    BatchRegistry,
    BatchResult,
    BatchSpec,
    RunSpec,
)

__all__ = [
    "BatchCoordinator",
    "BatchRegistry",
    "BatchResult",
    "BatchSpec",
    "RunSpec",
]
