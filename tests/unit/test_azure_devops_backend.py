"""Tests for the Azure DevOps client and backend using a dummy HTTP layer."""
import base64
from unittest.mock import AsyncMock, MagicMock

import pytest

from testrunmcp.backends import azure_devops
from testrunmcp.backends.azure_devops import (
    API_VERSION,
    AzureDevOpsBackend,
    AzureDevOpsClient,
    summarize_test_results,
)
from testrunmcp.domains.batch_execution.entities import RunSpec
from testrunmcp.domains.batch_execution.errors import (
    ErrorCode,
    FatalExecutionError,
    TransientExecutionError,
)
from testrunmcp.domains.batch_execution.services import RunContext
from tests.unit.helpers.dummy_http import DummyServer

ORG_URL = "https://dev.azure.com/contoso"

COMPLETED_RUN = {
    "id": 77,
    "state": "Completed",
    "totalTests": 2,
    "passedTests": 2,
    "runStatistics": [{"outcome": "Passed", "count": 2}],
}


@pytest.fixture
def server(monkeypatch):
    dummy = DummyServer()
    monkeypatch.setattr(azure_devops.http.client, "HTTPSConnection", dummy.connection)
    monkeypatch.setattr(azure_devops.http.client, "HTTPConnection", dummy.connection)
    return dummy


@pytest.fixture
def client():
    return AzureDevOpsClient(ORG_URL, token="secret-pat")


def _make_backend(client, **kwargs):
    kwargs.setdefault("project", "Proj")
    kwargs.setdefault("poll_interval", 5)
    kwargs.setdefault("sleep", AsyncMock())
    return AzureDevOpsBackend(client, **kwargs)


def _context(**kwargs):
    defaults = {"batch_id": "batch_1", "batch_name": "Nightly"}
    defaults.update(kwargs)
    return RunContext(**defaults)


def _run(**kwargs):
    defaults = {"run_name": "Smoke", "plan_id": 1, "suite_ids": (2,)}
    defaults.update(kwargs)
    return RunSpec(**defaults)


# ── AzureDevOpsClient ────────────────────────────────────────────────


class TestClientUrls:
    def test_full_url(self):
        c = AzureDevOpsClient(ORG_URL)
        assert (c.scheme, c.host, c.base_path) == ("https", "dev.azure.com", "/contoso")

    def test_bare_organization_name(self):
        c = AzureDevOpsClient("contoso")
        assert c.host == "dev.azure.com"
        assert c.base_path == "/contoso"

    def test_on_premises_server(self):
        c = AzureDevOpsClient("http://tfs.local:8080/tfs/Default/")
        assert (c.scheme, c.host, c.port) == ("http", "tfs.local", 8080)
        assert c.base_path == "/tfs/Default"

    def test_invalid_url(self):
        with pytest.raises(ValueError, match="Invalid organization URL"):
            AzureDevOpsClient("https://")


class TestClientRequests:
    def test_get_points_builds_url_and_auth(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 5}]})
        points = client.get_points("My Project", 1, 2)
        assert points == [{"id": 5}]
        request = server.requests[0]
        assert request["path"] == (
            "/contoso/My%20Project/_apis/test/Plans/1/Suites/2/points"
            f"?api-version={API_VERSION}"
        )
        expected = base64.b64encode(b":secret-pat").decode("ascii")
        assert request["headers"]["Authorization"] == f"Basic {expected}"

    def test_get_points_with_test_case(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": []})
        assert client.get_points("Proj", 1, 2, test_case_id=9) == []
        assert "testCaseId=9" in server.requests[0]["path"]

    def test_no_token_no_auth_header(self, server):
        server.route("GET", "test/runs/1", body={"id": 1})
        AzureDevOpsClient(ORG_URL).get_test_run("Proj", 1)
        assert "Authorization" not in server.requests[0]["headers"]

    def test_create_test_run_posts_json(self, server, client):
        server.route("POST", "test/runs", body={"id": 3})
        created = client.create_test_run("Proj", {"name": "x", "pointIds": [1]})
        assert created == {"id": 3}
        request = server.requests[0]
        assert request["method"] == "POST"
        assert request["body"] == {"name": "x", "pointIds": [1]}
        assert request["headers"]["Content-Type"] == "application/json"

    def test_empty_body_is_empty_dict(self, server, client):
        server.route("GET", "test/runs/1", status=204)
        assert client.get_test_run("Proj", 1) == {}

    @pytest.mark.parametrize("status,code", [
        (429, ErrorCode.RATE_LIMIT_EXCEEDED),
        (503, ErrorCode.OPERATION_FAILED),
        (408, ErrorCode.OPERATION_FAILED),
    ])
    def test_transient_statuses(self, server, client, status, code):
        server.route("GET", "test/runs/1", status=status, body={"message": "busy"})
        with pytest.raises(TransientExecutionError) as exc_info:
            client.get_test_run("Proj", 1)
        assert exc_info.value.code == code
        assert exc_info.value.retryable
        assert exc_info.value.details["status"] == status

    def test_not_found_is_fatal(self, server, client):
        server.route("GET", "test/runs/1", status=404, body={"message": "Run 1 not found"})
        with pytest.raises(FatalExecutionError) as exc_info:
            client.get_test_run("Proj", 1)
        assert exc_info.value.code == ErrorCode.RESOURCE_NOT_FOUND
        assert "Run 1 not found" in str(exc_info.value)
        assert not exc_info.value.retryable

    def test_bad_request_is_fatal(self, server, client):
        server.route("POST", "test/runs", status=400, body=b"plain text error")
        with pytest.raises(FatalExecutionError) as exc_info:
            client.create_test_run("Proj", {})
        assert exc_info.value.code == ErrorCode.OPERATION_FAILED
        assert "plain text error" in str(exc_info.value)

    def test_connection_error_is_transient(self, server, client):
        server.error = ConnectionRefusedError("refused")
        with pytest.raises(TransientExecutionError, match="connection error"):
            client.get_test_run("Proj", 1)

    def test_invalid_json_is_fatal(self, server, client):
        server.route("GET", "test/runs/1", body=b"<html>oops</html>")
        with pytest.raises(FatalExecutionError, match="invalid response"):
            client.get_test_run("Proj", 1)


class TestClientResults:
    def test_get_test_results_paging(self, server, client):
        server.route("GET", "test/runs/77/results", body={"value": [{"id": 1}, {"id": 2}]})
        assert client.get_test_results("Proj", 77, skip=10, top=50) == [{"id": 1}, {"id": 2}]
        path = server.requests[0]["path"]
        assert path.startswith("/contoso/Proj/_apis/test/runs/77/results?")
        assert "%24skip=10" in path
        assert "%24top=50" in path

    def test_iterations_and_attachments(self, server, client):
        server.route("GET", "results/3/iterations", body={"value": [{"id": 1, "outcome": "Passed"}]})
        server.route("GET", "results/3/attachments", body={"value": [{"id": 8, "fileName": "log.txt"}]})
        assert client.get_test_iterations("Proj", 77, 3) == [{"id": 1, "outcome": "Passed"}]
        assert client.get_result_attachments("Proj", 77, 3)[0]["fileName"] == "log.txt"
        assert server.paths()[0].startswith("/contoso/Proj/_apis/test/runs/77/results/3/iterations?")

    def test_update_test_results_patches_list(self, server, client):
        server.route("PATCH", "test/runs/77/results", body={"count": 1, "value": [{"id": 5}]})
        updated = client.update_test_results("Proj", 77, [{"id": 5, "outcome": "Passed"}])
        assert updated == [{"id": 5}]
        request = server.requests[0]
        assert request["method"] == "PATCH"
        assert request["body"] == [{"id": 5, "outcome": "Passed"}]

    def test_update_test_results_accepts_bare_list(self, server, client):
        server.route("PATCH", "test/runs/77/results", body=[{"id": 5}])
        assert client.update_test_results("Proj", 77, [{"id": 5}]) == [{"id": 5}]

    def test_create_result_attachment(self, server, client):
        server.route("POST", "results/5/attachments", body={"id": 9, "url": "https://x/9"})
        created = client.create_result_attachment(
            "Proj", 77, 5, {"fileName": "shot.png", "stream": "aGVsbG8="},
        )
        assert created["id"] == 9
        assert server.requests[0]["body"] == {"fileName": "shot.png", "stream": "aGVsbG8="}


class TestSummarizeTestResults:
    def test_counts_and_duration(self):
        summary = summarize_test_results([
            {"outcome": "Passed", "durationInMs": 1500},
            {"outcome": "Failed", "durationInMs": 500.0},
            {"outcome": "Passed"},
            {"durationInMs": None},
        ])
        assert summary == {
            "total": 4,
            "total_duration_ms": 2000,
            "duration": "2s",
            "outcomes": {"Passed": 2, "Failed": 1, "NotExecuted": 1},
        }

    def test_empty(self):
        assert summarize_test_results([]) == {
            "total": 0, "total_duration_ms": 0, "duration": "0ms", "outcomes": {},
        }


# ── AzureDevOpsBackend ───────────────────────────────────────────────


class TestBackendExecute:
    @pytest.mark.asyncio
    async def test_creates_run_and_polls_until_completed(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}, {"id": 12}]})
        server.route("POST", "test/runs", body={"id": 77, "webAccessUrl": "https://x/77"})
        server.route("GET", "test/runs/77", body={"id": 77, "state": "InProgress"})
        server.route("GET", "test/runs/77", body=COMPLETED_RUN)
        backend = _make_backend(client)

        outcome = await backend.execute(_run(), _context())

        assert outcome.succeeded
        assert outcome.detail["test_run_id"] == 77
        assert outcome.detail["url"] == "https://x/77"
        assert outcome.detail["test_points"] == 2
        assert outcome.detail["total_tests"] == 2
        assert outcome.detail["failed_tests"] == 0
        backend._sleep.assert_awaited_once_with(5)
        created = server.requests[1]["body"]
        assert created["name"] == "Nightly - Smoke"
        assert created["pointIds"] == [11, 12]
        assert created["plan"] == {"id": "1"}
        assert created["comment"] == "Batch batch_1"

    @pytest.mark.asyncio
    async def test_failed_tests_make_outcome_unsuccessful(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        server.route("GET", "test/runs/8", body={
            "id": 8,
            "state": "Completed",
            "totalTests": 2,
            "passedTests": 1,
            "runStatistics": [
                {"outcome": "Passed", "count": 1},
                {"outcome": "Failed", "count": 1},
            ],
        })
        outcome = await _make_backend(client).execute(_run(), _context())
        assert not outcome.succeeded
        assert outcome.detail["error"] == "1 of 2 test(s) did not pass"

    @pytest.mark.asyncio
    async def test_aborted_run_is_unsuccessful(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        server.route("GET", "test/runs/8", body={"id": 8, "state": "Aborted"})
        outcome = await _make_backend(client).execute(_run(), _context())
        assert not outcome.succeeded
        assert "aborted" in outcome.detail["error"]

    @pytest.mark.asyncio
    async def test_without_waiting(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        backend = _make_backend(client, wait_for_completion=False)
        outcome = await backend.execute(_run(), _context())
        assert outcome.succeeded
        assert outcome.detail == {"test_run_id": 8, "test_points": 1}
        assert server.paths("GET") == [server.requests[0]["path"]]

    @pytest.mark.asyncio
    async def test_test_case_filter_and_dedup(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}, {"id": 12}]})
        server.route("GET", "Suites/3/points", body={"value": [{"id": 12}, {"id": 13}]})
        server.route("POST", "test/runs", body={"id": 8})
        backend = _make_backend(client, wait_for_completion=False)
        run = _run(suite_ids=(2, 3), test_case_ids=(100,))
        outcome = await backend.execute(run, _context())
        assert outcome.detail["test_points"] == 3
        assert all("testCaseId=100" in p for p in server.paths("GET"))
        assert server.requests[-1]["body"]["pointIds"] == [11, 12, 13]

    @pytest.mark.asyncio
    async def test_retry_attempt_in_run_name(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        backend = _make_backend(client, wait_for_completion=False)
        run = _run(build_id=42, configuration_id=3, automated=True)
        await backend.execute(run, _context(attempt=2))
        model = server.requests[-1]["body"]
        assert model["name"] == "Nightly - Smoke (attempt 2)"
        assert model["build"] == {"id": "42"}
        assert model["configurationIds"] == [3]
        assert model["automated"] is True

    @pytest.mark.asyncio
    async def test_context_project_wins(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        backend = _make_backend(client, wait_for_completion=False)
        await backend.execute(_run(), _context(project="Other"))
        assert server.requests[0]["path"].startswith("/contoso/Other/")

    @pytest.mark.asyncio
    async def test_no_points_is_fatal(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": []})
        with pytest.raises(FatalExecutionError) as exc_info:
            await _make_backend(client).execute(_run(), _context())
        assert exc_info.value.code == ErrorCode.RESOURCE_NOT_FOUND
        assert server.paths("POST") == []

    @pytest.mark.asyncio
    async def test_poll_timeout_is_fatal(self, server, client):
        server.route("GET", "Suites/2/points", body={"value": [{"id": 11}]})
        server.route("POST", "test/runs", body={"id": 8})
        server.route("GET", "test/runs/8", body={"id": 8, "state": "InProgress"})
        clock = MagicMock(side_effect=[0.0, 5.0, 20.0])
        backend = _make_backend(client, run_timeout=10, clock=clock)
        with pytest.raises(FatalExecutionError, match="did not complete within"):
            await backend.execute(_run(), _context())
        assert len(server.paths("GET")) == 3


class TestBackendInputChecks:
    @pytest.mark.asyncio
    async def test_missing_project(self, server, client):
        backend = _make_backend(client, project=None)
        with pytest.raises(FatalExecutionError) as exc_info:
            await backend.execute(_run(), _context())
        assert exc_info.value.code == ErrorCode.MISSING_REQUIRED_FIELD
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_missing_plan(self, server, client):
        with pytest.raises(FatalExecutionError, match="has no plan_id"):
            await _make_backend(client).execute(_run(plan_id=None), _context())

    @pytest.mark.asyncio
    async def test_missing_suites(self, server, client):
        with pytest.raises(FatalExecutionError, match="has no suite_ids"):
            await _make_backend(client).execute(_run(suite_ids=()), _context())


class TestOutcome:
    def test_unanalyzed_tests_count_as_failed(self):
        outcome = AzureDevOpsBackend._outcome(
            {"state": "Completed", "totalTests": 3, "unanalyzedTests": 2}, {"test_run_id": 1},
        )
        assert not outcome.succeeded
        assert outcome.detail["failed_tests"] == 2

    def test_clean_run(self):
        outcome = AzureDevOpsBackend._outcome(COMPLETED_RUN, {"test_run_id": 77})
        assert outcome.succeeded
        assert outcome.detail["passed_tests"] == 2
        assert "error" not in outcome.detail
