"""Tests for the shared tool parameter types in testrunmcp.domains.shared.kernel."""

import pytest
from pydantic import TypeAdapter, ValidationError

from testrunmcp.domains.shared.kernel import (
    ExecutionModeLiteral,
    RunDefinitions,
    TEST_OUTCOMES,
    TestOutcomeLiteral,
    _coerce_string_to_runs,
    _normalize_str,
)


# ============================================================
# 1. ExecutionModeLiteral
# ============================================================


class TestExecutionModeLiteral:
    def test_accepts_valid_values(self):
        ta = TypeAdapter(ExecutionModeLiteral)
        assert ta.validate_python("sequential") == "sequential"
        assert ta.validate_python("parallel") == "parallel"

    def test_case_insensitive(self):
        ta = TypeAdapter(ExecutionModeLiteral)
        assert ta.validate_python("  Parallel ") == "parallel"
        assert ta.validate_python("SEQUENTIAL") == "sequential"

    def test_rejects_unknown(self):
        ta = TypeAdapter(ExecutionModeLiteral)
        with pytest.raises(ValidationError):
            ta.validate_python("random")

    def test_schema_is_flat_enum(self):
        schema = TypeAdapter(ExecutionModeLiteral).json_schema()
        assert schema["enum"] == ["sequential", "parallel"]


# ============================================================
# 2. RunDefinitions
# ============================================================


class TestRunDefinitions:
    def test_list_passthrough(self):
        ta = TypeAdapter(RunDefinitions)
        runs = [{"runName": "A"}, {"runName": "B", "dependsOn": ["A"]}]
        assert ta.validate_python(runs) == runs

    def test_json_array_string(self):
        ta = TypeAdapter(RunDefinitions)
        assert ta.validate_python('[{"runName": "A"}]') == [{"runName": "A"}]

    def test_json_object_string_is_wrapped(self):
        ta = TypeAdapter(RunDefinitions)
        assert ta.validate_python('{"runName": "A"}') == [{"runName": "A"}]

    def test_invalid_json_rejected(self):
        ta = TypeAdapter(RunDefinitions)
        with pytest.raises(ValidationError):
            ta.validate_python("runName=A")

    def test_list_of_scalars_rejected(self):
        ta = TypeAdapter(RunDefinitions)
        with pytest.raises(ValidationError):
            ta.validate_python("[1, 2]")


# ============================================================
# 3. Helpers
# ============================================================


class TestHelpers:
    def test_normalize_non_string_passthrough(self):
        assert _normalize_str(42) == 42
        assert _normalize_str(None) is None

    def test_coerce_leaves_blank_string(self):
        assert _coerce_string_to_runs("   ") == "   "

    def test_coerce_non_string_passthrough(self):
        runs = [{"runName": "A"}]
        assert _coerce_string_to_runs(runs) is runs


# ============================================================
# 4. TestOutcomeLiteral
# ============================================================


class TestOutcomeLiteralType:
    def test_case_insensitive(self):
        ta = TypeAdapter(TestOutcomeLiteral)
        assert ta.validate_python("failed") == "Failed"
        assert ta.validate_python(" notexecuted ") == "NotExecuted"
        assert ta.validate_python("Passed") == "Passed"

    def test_rejects_unknown(self):
        ta = TypeAdapter(TestOutcomeLiteral)
        with pytest.raises(ValidationError):
            ta.validate_python("Maybe")

    def test_schema_lists_every_outcome(self):
        schema = TypeAdapter(TestOutcomeLiteral).json_schema()
        assert schema["enum"] == list(TEST_OUTCOMES)
