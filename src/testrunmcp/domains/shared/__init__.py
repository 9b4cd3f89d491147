"""Shared Kernel - Types shared across the server, CLI and domains."""

from testrunmcp.domains.shared.kernel import (
    ExecutionModeLiteral,
    RunDefinitions,
    TestOutcomeLiteral,
)

__all__ = [
    "ExecutionModeLiteral",
    "RunDefinitions",
    "TestOutcomeLiteral",
]
