"""End-to-end batch orchestration: batch file -> coordinator -> Azure DevOps backend.

The Azure DevOps REST API is replaced by the shared dummy HTTP layer; every
other component is real.
"""

import pytest

from testrunmcp.backends import azure_devops
from testrunmcp.batch_file import load_batch_file
from testrunmcp.config import OrchestratorConfig
from testrunmcp.container import ServiceContainer
from testrunmcp.domains.batch_execution import (
    BatchAborted,
    OverallStatus,
    RunStatus,
    SkipReason,
)
from tests.unit.helpers.dummy_http import DummyServer

pytestmark = pytest.mark.integration

BATCH_YAML = """\
batch:
  batchName: Release
  executionMode: parallel
  maxConcurrentRuns: 2
  defaultMaxRetries: 1
  runs:
    - runName: Smoke
      planId: 10
      suiteIds: [100]
    - runName: Api
      planId: 10
      suiteIds: [101]
      dependsOn: [Smoke]
    - runName: Ui
      planId: 10
      suiteIds: [102]
      dependsOn: [Smoke]
      priority: 1
"""


def _completed(run_id, failed=0):
    stats = [{"outcome": "Passed", "count": 2 - failed}]
    if failed:
        stats.append({"outcome": "Failed", "count": failed})
    return {
        "id": run_id,
        "state": "Completed",
        "totalTests": 2,
        "passedTests": 2 - failed,
        "runStatistics": stats,
    }


@pytest.fixture
def server(monkeypatch):
    dummy = DummyServer()
    monkeypatch.setattr(azure_devops.http.client, "HTTPSConnection", dummy.connection)
    for suite_id, point_id in ((100, 1), (101, 2), (102, 3)):
        dummy.route("GET", f"Suites/{suite_id}/points", body={"value": [{"id": point_id}]})
    return dummy


@pytest.fixture
def container():
    c = ServiceContainer()
    c.configure(OrchestratorConfig(
        backend="azure_devops",
        organization_url="https://dev.azure.com/contoso",
        project="Fabrikam",
        token="pat",
        poll_interval=0,
    ))
    return c


@pytest.fixture
def batch_path(tmp_path):
    path = tmp_path / "release.yaml"
    path.write_text(BATCH_YAML, encoding="utf-8")
    return path


def _route_runs(server, outcomes):
    """Create-run responses in dispatch order, plus their completed states."""
    for run_id, failed in outcomes:
        server.route("POST", "test/runs", body={"id": run_id})
        server.route("GET", f"test/runs/{run_id}", body=_completed(run_id, failed))


@pytest.mark.asyncio
async def test_release_batch_succeeds(server, container, batch_path):
    _route_runs(server, [(501, 0), (502, 0), (503, 0)])
    spec = load_batch_file(batch_path)

    coordinator = container.new_coordinator()
    batch_id = coordinator.submit(spec)
    result = await coordinator.run()

    assert result.overall_status == OverallStatus.SUCCEEDED
    assert [w.run_names for w in coordinator.plan.units] == [("Smoke",), ("Api", "Ui")]
    smoke = result.get_run("Smoke")
    assert smoke.detail["test_run_id"] == 501
    assert smoke.dispatch_index == 1
    assert result.get_run("Ui").dispatch_index == 2

    created = [r["body"] for r in server.requests if r["method"] == "POST"]
    assert created[0]["name"] == "Release - Smoke"
    assert sorted(m["name"] for m in created[1:]) == ["Release - Api", "Release - Ui"]
    assert all(m["comment"] == f"Batch {batch_id}" for m in created)
    assert all(r["path"].startswith("/contoso/Fabrikam/") for r in server.requests)


@pytest.mark.asyncio
async def test_failed_smoke_run_is_retried_then_skips_dependents(server, container, batch_path):
    _route_runs(server, [(601, 1), (602, 2)])
    events = []
    coordinator = container.new_coordinator()
    coordinator.publisher = events.append
    coordinator.submit(load_batch_file(batch_path))

    result = await coordinator.run()

    smoke = result.get_run("Smoke")
    assert smoke.status == RunStatus.FAILED
    assert smoke.attempt == 2
    assert smoke.detail["failed_tests"] == 2
    for name in ("Api", "Ui"):
        assert result.get_run(name).skip_reason == SkipReason.DEPENDENCY_FAILED
    assert result.overall_status == OverallStatus.FAILED

    created = [r["body"]["name"] for r in server.requests if r["method"] == "POST"]
    assert created == ["Release - Smoke", "Release - Smoke (attempt 2)"]
    assert any(isinstance(e, BatchAborted) for e in events)


@pytest.mark.asyncio
async def test_throttling_is_retried(server, container, batch_path):
    server.route("POST", "test/runs", status=429, body={"message": "slow down"})
    _route_runs(server, [(701, 0), (702, 0), (703, 0)])
    coordinator = container.new_coordinator()
    coordinator.submit(load_batch_file(batch_path))

    result = await coordinator.run()

    assert result.get_run("Smoke").attempt == 2
    assert result.overall_status == OverallStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_missing_points_fail_without_retry(server, container, batch_path):
    server.route("GET", "Suites/100/points", body={"value": []}, replace=True)
    coordinator = container.new_coordinator()
    coordinator.submit(load_batch_file(batch_path))

    result = await coordinator.run()

    smoke = result.get_run("Smoke")
    assert smoke.status == RunStatus.FAILED
    assert smoke.attempt == 1
    assert smoke.detail["code"] == "RESOURCE_NOT_FOUND"
    assert not [r for r in server.requests if r["method"] == "POST"]
