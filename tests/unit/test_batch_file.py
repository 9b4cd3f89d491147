"""Tests for loading batch definitions from YAML and JSON files."""
import json

import pytest

from testrunmcp.batch_file import BatchFileError, load_batch_file, parse_batch_data
from testrunmcp.domains.batch_execution import ExecutionMode

YAML_BATCH = """\
batchName: Nightly
executionMode: parallel
maxConcurrentRuns: 2
project: ${BATCH_TEST_PROJECT}
runs:
  - runName: Smoke
    planId: 1
    suiteIds: [2]
  - runName: Regression
    planId: 1
    suiteIds: [3, 4]
    dependsOn: [Smoke]
"""


class TestLoadBatchFile:
    def test_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BATCH_TEST_PROJECT", "Fabrikam")
        path = tmp_path / "nightly.yaml"
        path.write_text(YAML_BATCH, encoding="utf-8")
        spec = load_batch_file(path)
        assert spec.batch_name == "Nightly"
        assert spec.execution_mode is ExecutionMode.PARALLEL
        assert spec.max_concurrent_runs == 2
        assert spec.project == "Fabrikam"
        assert spec.get_run("Regression").depends_on == ("Smoke",)
        assert spec.get_run("Regression").suite_ids == (3, 4)

    def test_json_with_batch_wrapper(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({
            "batch": {"batchName": "J", "runs": [{"runName": "A"}]},
        }), encoding="utf-8")
        spec = load_batch_file(str(path))
        assert spec.batch_name == "J"
        assert spec.run_names == ["A"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(BatchFileError, match="Cannot read"):
            load_batch_file(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("runs: [unclosed", encoding="utf-8")
        with pytest.raises(BatchFileError, match="Cannot parse"):
            load_batch_file(path)

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(BatchFileError, match="Cannot parse"):
            load_batch_file(path)

    def test_unset_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BATCH_TEST_PROJECT", raising=False)
        path = tmp_path / "nightly.yml"
        path.write_text(YAML_BATCH, encoding="utf-8")
        with pytest.raises(BatchFileError, match="BATCH_TEST_PROJECT is not set"):
            load_batch_file(path)


class TestParseBatchData:
    def test_top_level_must_be_mapping(self):
        with pytest.raises(BatchFileError, match="mapping"):
            parse_batch_data(["not", "a", "batch"])

    def test_structural_error_wrapped(self):
        with pytest.raises(BatchFileError, match="runs must be a list"):
            parse_batch_data({"batchName": "X", "runs": "A"})

    def test_values_left_for_validation(self):
        spec = parse_batch_data({"batchName": "X", "runs": [{"runName": "A", "maxRetries": -1}]})
        assert spec.get_run("A").max_retries == -1
