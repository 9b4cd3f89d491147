"""Shared helpers."""

from testrunmcp.utils.formatting import format_execution_duration, generate_test_run_id

__all__ = ["format_execution_duration", "generate_test_run_id"]
