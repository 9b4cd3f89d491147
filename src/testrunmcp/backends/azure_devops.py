"""Azure DevOps Test Plans backend.

``AzureDevOpsClient`` is a small blocking REST client over ``http.client``.
``AzureDevOpsBackend`` adapts it to the ``ExecutionBackend`` protocol: it
resolves the test points of a run, creates a test run and polls it until the
service reports it completed. Blocking calls run in a worker thread so the
coordinator's event loop keeps driving other runs.
"""
from __future__ import annotations

import asyncio
import base64
import http.client
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode, urlsplit

from testrunmcp.domains.batch_execution.entities import RunSpec
from testrunmcp.domains.batch_execution.errors import (
    ErrorCode,
    FatalExecutionError,
    TransientExecutionError,
)
from testrunmcp.domains.batch_execution.services import ExecutionOutcome, RunContext
from testrunmcp.utils.formatting import format_execution_duration

logger = logging.getLogger(__name__)

API_VERSION = "7.2-preview.1"

# HTTP statuses worth another attempt
_TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# runStatistics outcomes that make a run unsuccessful
_FAILED_OUTCOMES = frozenset({"Failed", "Aborted", "Error", "Timeout", "Blocked"})


class AzureDevOpsClient:
    """Minimal client for the Azure DevOps Test REST API.

    Every method either returns decoded JSON or raises an ``ExecutionError``:
    network problems and 408/429/5xx responses are transient, every other
    non-2xx response is fatal.
    """

    def __init__(
        self,
        organization_url: str,
        token: Optional[str] = None,
        api_version: str = API_VERSION,
        timeout: float = 30.0,
    ) -> None:
        parts = urlsplit(organization_url if "://" in organization_url
                         else f"https://dev.azure.com/{organization_url}")
        if not parts.hostname:
            raise ValueError(f"Invalid organization URL: {organization_url!r}")
        self.scheme = parts.scheme or "https"
        self.host = parts.hostname
        self.port = parts.port
        self.base_path = parts.path.rstrip("/")
        self.token = token
        self.api_version = api_version
        self.timeout = timeout

    def _headers(self, body: Optional[bytes]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"
            headers["Content-Length"] = str(len(body))
        if self.token:
            credentials = base64.b64encode(f":{self.token}".encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {credentials}"
        return headers

    def _connection(self) -> http.client.HTTPConnection:
        if self.scheme == "http":
            return http.client.HTTPConnection(self.host, self.port, timeout=self.timeout)
        return http.client.HTTPSConnection(self.host, self.port, timeout=self.timeout)

    def _request(
        self,
        method: str,
        project: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
    ) -> Any:
        query = dict(params or {})
        query["api-version"] = self.api_version
        url = f"{self.base_path}/{quote(project)}/_apis/{path}?{urlencode(query)}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None

        conn = self._connection()
        try:
            conn.request(method, url, body, self._headers(body))
            resp = conn.getresponse()
            status = resp.status
            data = resp.read()
        except (OSError, http.client.HTTPException) as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise TransientExecutionError(
                f"connection error: {e}", details={"method": method, "path": url},
            ) from e
        finally:
            conn.close()

        if status >= 400:
            self._raise_for_status(method, url, status, data)
        if not data:
            return {}
        try:
            return json.loads(data.decode("utf-8"))
        except ValueError as e:
            raise FatalExecutionError(
                f"invalid response from {url}: {data[:200]!r}",
                code=ErrorCode.OPERATION_FAILED,
            ) from e

    @staticmethod
    def _raise_for_status(method: str, url: str, status: int, data: bytes) -> None:
        try:
            message = json.loads(data.decode("utf-8")).get("message") or ""
        except (ValueError, AttributeError):
            message = data[:200].decode("utf-8", errors="replace")
        details = {"method": method, "path": url, "status": status}
        text = f"HTTP {status} for {method} {url}" + (f": {message}" if message else "")
        logger.warning(text)
        if status in _TRANSIENT_STATUSES:
            code = ErrorCode.RATE_LIMIT_EXCEEDED if status == 429 else ErrorCode.OPERATION_FAILED
            raise TransientExecutionError(text, code=code, details=details)
        code = ErrorCode.RESOURCE_NOT_FOUND if status == 404 else ErrorCode.OPERATION_FAILED
        raise FatalExecutionError(text, code=code, details=details)

    # ------------------------------------------------------------------
    # Test API
    # ------------------------------------------------------------------

    def get_points(
        self, project: str, plan_id: int, suite_id: int, test_case_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if test_case_id is not None:
            params["testCaseId"] = test_case_id
        data = self._request(
            "GET", project, f"test/Plans/{plan_id}/Suites/{suite_id}/points", params=params,
        )
        return list(data.get("value") or [])

    def create_test_run(self, project: str, model: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", project, "test/runs", payload=model)

    def get_test_run(self, project: str, run_id: int) -> Dict[str, Any]:
        return self._request("GET", project, f"test/runs/{run_id}")

    # ------------------------------------------------------------------
    # Test results
    # ------------------------------------------------------------------

    def get_test_results(
        self, project: str, run_id: int, skip: int = 0, top: int = 100
    ) -> List[Dict[str, Any]]:
        data = self._request(
            "GET", project, f"test/runs/{run_id}/results",
            params={"$skip": skip, "$top": top},
        )
        return list(data.get("value") or [])

    def get_test_iterations(
        self, project: str, run_id: int, result_id: int
    ) -> List[Dict[str, Any]]:
        data = self._request(
            "GET", project, f"test/runs/{run_id}/results/{result_id}/iterations",
        )
        return list(data.get("value") or [])

    def get_result_attachments(
        self, project: str, run_id: int, result_id: int
    ) -> List[Dict[str, Any]]:
        data = self._request(
            "GET", project, f"test/runs/{run_id}/results/{result_id}/attachments",
        )
        return list(data.get("value") or [])

    def update_test_results(
        self, project: str, run_id: int, results: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """PATCH a list of result models; returns the updated results."""
        data = self._request(
            "PATCH", project, f"test/runs/{run_id}/results", payload=results,
        )
        if isinstance(data, list):
            return data
        return list(data.get("value") or [])

    def create_result_attachment(
        self, project: str, run_id: int, result_id: int, attachment: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Upload one attachment (``fileName`` plus base64 ``stream``)."""
        return self._request(
            "POST", project, f"test/runs/{run_id}/results/{result_id}/attachments",
            payload=attachment,
        )


def summarize_test_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Count results per outcome and add up their durations."""
    outcomes: Dict[str, int] = {}
    total_duration = 0.0
    for result in results:
        outcome = result.get("outcome") or "NotExecuted"
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
        total_duration += float(result.get("durationInMs") or 0)
    return {
        "total": len(results),
        "total_duration_ms": int(total_duration),
        "duration": format_execution_duration(total_duration),
        "outcomes": outcomes,
    }


class AzureDevOpsBackend:
    """Executes a RunSpec as an Azure DevOps test run.

    With ``wait_for_completion`` disabled a run counts as succeeded as soon
    as the test run is created (useful for manual test runs).
    """

    def __init__(
        self,
        client: AzureDevOpsClient,
        *,
        project: Optional[str] = None,
        poll_interval: float = 10.0,
        run_timeout: float = 3600.0,
        wait_for_completion: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.project = project
        self.poll_interval = poll_interval
        self.run_timeout = run_timeout
        self.wait_for_completion = wait_for_completion
        self._sleep = sleep
        self._clock = clock

    async def execute(self, run: RunSpec, context: RunContext) -> ExecutionOutcome:
        project = context.project or self.project
        if not project:
            raise FatalExecutionError(
                "No project configured for the batch", code=ErrorCode.MISSING_REQUIRED_FIELD,
            )
        if run.plan_id is None:
            raise FatalExecutionError(
                f"Run '{run.run_name}' has no plan_id", code=ErrorCode.MISSING_REQUIRED_FIELD,
            )
        if not run.suite_ids:
            raise FatalExecutionError(
                f"Run '{run.run_name}' has no suite_ids", code=ErrorCode.INVALID_INPUT,
            )

        points = await asyncio.to_thread(self._resolve_points, project, run)
        if not points:
            raise FatalExecutionError(
                "No test points found for the specified criteria",
                code=ErrorCode.RESOURCE_NOT_FOUND,
                details={"plan_id": run.plan_id, "suite_ids": list(run.suite_ids)},
            )

        model = self._run_model(run, context, [p["id"] for p in points])
        created = await asyncio.to_thread(self.client.create_test_run, project, model)
        run_id = created.get("id")
        logger.info(
            "Created test run %s for '%s' with %d point(s)", run_id, run.run_name, len(points),
        )
        detail: Dict[str, Any] = {"test_run_id": run_id, "test_points": len(points)}
        if created.get("webAccessUrl"):
            detail["url"] = created["webAccessUrl"]

        if not self.wait_for_completion or run_id is None:
            return ExecutionOutcome(succeeded=True, detail=detail)

        test_run = await self._wait_for_completion(project, run_id)
        return self._outcome(test_run, detail)

    def _resolve_points(self, project: str, run: RunSpec) -> List[Dict[str, Any]]:
        """Test points of every suite, narrowed to ``test_case_ids`` if given."""
        assert run.plan_id is not None
        points: List[Dict[str, Any]] = []
        seen: set = set()
        for suite_id in run.suite_ids:
            if run.test_case_ids:
                batches = [
                    self.client.get_points(project, run.plan_id, suite_id, case_id)
                    for case_id in run.test_case_ids
                ]
            else:
                batches = [self.client.get_points(project, run.plan_id, suite_id)]
            for batch in batches:
                for point in batch:
                    if point.get("id") is not None and point["id"] not in seen:
                        seen.add(point["id"])
                        points.append(point)
        return points

    @staticmethod
    def _run_model(run: RunSpec, context: RunContext, point_ids: List[int]) -> Dict[str, Any]:
        name = f"{context.batch_name} - {run.run_name}"
        if context.attempt > 1:
            name += f" (attempt {context.attempt})"
        model: Dict[str, Any] = {
            "name": name,
            "plan": {"id": str(run.plan_id)},
            "pointIds": point_ids,
            "automated": run.automated,
            "comment": f"Batch {context.batch_id}",
        }
        if run.build_id is not None:
            model["build"] = {"id": str(run.build_id)}
        if run.configuration_id is not None:
            model["configurationIds"] = [run.configuration_id]
        return model

    async def _wait_for_completion(self, project: str, run_id: int) -> Dict[str, Any]:
        deadline = self._clock() + self.run_timeout
        while True:
            test_run = await asyncio.to_thread(self.client.get_test_run, project, run_id)
            state = test_run.get("state")
            logger.debug("Test run %s state: %s", run_id, state)
            if state in ("Completed", "Aborted"):
                return test_run
            if self._clock() >= deadline:
                raise FatalExecutionError(
                    f"Test run {run_id} did not complete within {self.run_timeout}s",
                    code=ErrorCode.OPERATION_FAILED,
                    details={"test_run_id": run_id, "state": state},
                )
            await self._sleep(self.poll_interval)

    @staticmethod
    def _outcome(test_run: Dict[str, Any], detail: Dict[str, Any]) -> ExecutionOutcome:
        detail = dict(detail)
        detail["state"] = test_run.get("state")
        total = int(test_run.get("totalTests") or 0)
        passed = int(test_run.get("passedTests") or 0)
        detail["total_tests"] = total
        detail["passed_tests"] = passed

        failed = sum(
            int(stat.get("count") or 0)
            for stat in test_run.get("runStatistics") or []
            if stat.get("outcome") in _FAILED_OUTCOMES
        )
        failed = max(failed, int(test_run.get("unanalyzedTests") or 0))
        detail["failed_tests"] = failed

        if test_run.get("state") == "Aborted":
            detail["error"] = f"Test run {detail.get('test_run_id')} was aborted"
            return ExecutionOutcome(succeeded=False, detail=detail)
        if failed:
            detail["error"] = f"{failed} of {total} test(s) did not pass"
            return ExecutionOutcome(succeeded=False, detail=detail)
        return ExecutionOutcome(succeeded=True, detail=detail)
