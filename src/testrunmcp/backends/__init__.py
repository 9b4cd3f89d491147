"""Execution backends for batch test runs."""

from testrunmcp.backends.azure_devops import (
    API_VERSION,
    AzureDevOpsBackend,
    AzureDevOpsClient,
    summarize_test_results,
)
from testrunmcp.backends.simulated import SimulatedBackend
from testrunmcp.domains.batch_execution.services import (
    ExecutionBackend,
    ExecutionOutcome,
    RunContext,
)

__all__ = [
    "API_VERSION",
    "AzureDevOpsBackend",
    "AzureDevOpsClient",
    "ExecutionBackend",
    "ExecutionOutcome",
    "RunContext",
    "SimulatedBackend",
    "summarize_test_results",
]
