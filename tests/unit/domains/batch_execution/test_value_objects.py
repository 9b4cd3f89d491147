"""Tests for batch_execution value objects."""
import re

import pytest

from testrunmcp.domains.batch_execution.value_objects import (
    TERMINAL_STATUSES,
    BatchId,
    ExecutionMode,
    OverallStatus,
    RunStatus,
    SkipReason,
)


# ── RunStatus ────────────────────────────────────────────────────────


class TestRunStatus:
    def test_values(self):
        assert [s.value for s in RunStatus] == [
            "Pending", "Ready", "Running", "Retrying",
            "Succeeded", "Failed", "Skipped",
        ]

    def test_is_str_enum(self):
        assert isinstance(RunStatus.PENDING, str)
        assert RunStatus.SUCCEEDED == "Succeeded"

    @pytest.mark.parametrize("status", [RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED])
    def test_terminal(self, status):
        assert status.is_terminal
        assert status in TERMINAL_STATUSES

    @pytest.mark.parametrize(
        "status", [RunStatus.PENDING, RunStatus.READY, RunStatus.RUNNING, RunStatus.RETRYING]
    )
    def test_not_terminal(self, status):
        assert not status.is_terminal

    def test_in_flight(self):
        assert RunStatus.RUNNING.is_in_flight
        assert RunStatus.RETRYING.is_in_flight
        assert not RunStatus.READY.is_in_flight
        assert not RunStatus.SUCCEEDED.is_in_flight


# ── OverallStatus / SkipReason ───────────────────────────────────────


class TestOverallStatus:
    def test_values(self):
        assert OverallStatus.SUCCEEDED.value == "Succeeded"
        assert OverallStatus.PARTIALLY_SUCCEEDED.value == "PartiallySucceeded"
        assert OverallStatus.FAILED.value == "Failed"


class TestSkipReason:
    def test_values(self):
        assert SkipReason.DEPENDENCY_FAILED.value == "DependencyFailed"
        assert SkipReason.BATCH_ABORTED.value == "BatchAborted"
        assert SkipReason.BATCH_TIMEOUT.value == "BatchTimeout"


# ── ExecutionMode ────────────────────────────────────────────────────


class TestExecutionMode:
    def test_parse_lowercase(self):
        assert ExecutionMode.parse("parallel") is ExecutionMode.PARALLEL

    def test_parse_is_case_insensitive(self):
        assert ExecutionMode.parse("  Sequential ") is ExecutionMode.SEQUENTIAL

    def test_parse_enum_passthrough(self):
        assert ExecutionMode.parse(ExecutionMode.PARALLEL) is ExecutionMode.PARALLEL

    def test_parse_unknown_raises(self):
        with pytest.raises(ValueError):
            ExecutionMode.parse("random")

    def test_parse_non_string_raises(self):
        with pytest.raises(ValueError, match="Unknown execution mode"):
            ExecutionMode.parse(3)


# ── BatchId ──────────────────────────────────────────────────────────


class TestBatchId:
    def test_generate_format(self):
        bid = BatchId.generate()
        assert re.fullmatch(r"batch_[0-9a-f]{12}", bid.value)

    def test_generate_unique(self):
        ids = {BatchId.generate().value for _ in range(100)}
        assert len(ids) == 100

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            BatchId(value="")

    def test_str(self):
        assert str(BatchId(value="batch_abc")) == "batch_abc"

    def test_frozen(self):
        bid = BatchId(value="batch_abc")
        with pytest.raises(AttributeError):
            bid.value = "other"  # type: ignore[misc]
