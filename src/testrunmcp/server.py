"""Main MCP Server implementation for batch test-run orchestration."""

import argparse
import asyncio
import logging
from typing import Annotated, Any, Dict, List, Optional, Tuple

from fastmcp import FastMCP
from pydantic import Field

from testrunmcp.backends import AzureDevOpsClient, summarize_test_results
from testrunmcp.config import ConfigError, load_orchestrator_config
from testrunmcp.container import get_container
from testrunmcp.domains.batch_execution import (
    BatchSpec,
    BatchValidationError,
    BatchValidator,
    ErrorCode,
    ExecutionError,
    ExecutionPlanner,
)
from testrunmcp.domains.shared import (
    ExecutionModeLiteral,
    RunDefinitions,
    TestOutcomeLiteral,
)

logger = logging.getLogger(__name__)

_INSTRUCTIONS = """\
Batch test-run orchestration for Azure DevOps Test Plans.

1. Optionally preview a batch with testexecution_plan_batch.
2. Submit it with testexecution_batch_runs (wait=false returns a batch_id).
3. Poll testexecution_get_batch_status until is_complete is true.
4. Drill into a run with testexecution_get_run_results (batch_id + run_name)
   and record manual outcomes with testexecution_update_result.

Runs reference each other by runName in dependsOn. A run starts only after
all of its dependencies succeeded; dependents of a failed run are skipped.
"""


def _create_mcp_server() -> FastMCP:
    """Create and configure the FastMCP server.

    Returns:
        Configured FastMCP server instance.
    """
    return FastMCP("Test Run MCP Server", instructions=_INSTRUCTIONS)


mcp = _create_mcp_server()


def _error(code: ErrorCode, message: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "error": message, "error_code": code.value}
    payload.update(extra)
    return payload


def _build_spec(
    batch_name: str,
    runs: List[Dict[str, Any]],
    execution_mode: str,
    max_concurrent_runs: Optional[int],
    continue_on_failure: bool,
    global_timeout: float,
    default_max_retries: Optional[int],
    default_retry_delay: Optional[float],
    project: Optional[str],
) -> BatchSpec:
    """Turn tool arguments into a BatchSpec.

    Raises:
        TypeError: If the runs are not a list of objects
    """
    cfg = get_container().config
    return BatchSpec.from_dict({
        "batch_name": batch_name,
        "runs": runs,
        "execution_mode": execution_mode,
        "max_concurrent_runs": (
            max_concurrent_runs if max_concurrent_runs is not None
            else cfg.default_max_concurrent_runs
        ),
        "continue_on_failure": continue_on_failure,
        "global_timeout": global_timeout,
        "default_max_retries": default_max_retries,
        "default_retry_delay": default_retry_delay,
        "project": project or cfg.project,
    })


@mcp.tool
async def testexecution_batch_runs(
    batch_name: str,
    runs: RunDefinitions,
    execution_mode: ExecutionModeLiteral = "sequential",
    max_concurrent_runs: int | None = None,
    continue_on_failure: bool = False,
    global_timeout: float = 0,
    default_max_retries: int | None = None,
    default_retry_delay: float | None = None,
    project: str | None = None,
    wait: bool = False,
) -> Dict[str, Any]:
    """Submit a batch of inter-dependent test runs for execution.

    WHEN TO USE THIS TOOL:
    - To execute several test runs with an order between them
    - To run independent suites in parallel with a concurrency cap

    The whole batch is validated first (unique names, known dependencies, no
    cycles, value ranges). If anything is wrong nothing is dispatched and
    every problem is reported at once.

    Args:
        batch_name: Human-readable batch name.
        runs: Run definitions. Each has runName, planId, suiteIds and
            optionally priority (lower first), dependsOn, maxRetries,
            retryDelay (seconds), testCaseIds, buildId, configurationId,
            automated.
        execution_mode: "sequential" (one run at a time) or "parallel" (waves).
        max_concurrent_runs: Wave size cap in parallel mode (default 3).
        continue_on_failure: Keep dispatching independent runs after a failure.
        global_timeout: Batch time budget in seconds; 0 disables it.
        default_max_retries: Retries for runs without their own maxRetries.
        default_retry_delay: Retry delay for runs without their own retryDelay.
        project: Test-management project (defaults to the configured one).
        wait: When True, return only after the batch finished.

    Returns:
        Dict[str, Any]: Submission payload:
            - success: bool
            - batch_id: id to poll with testexecution_get_batch_status
            - plan: static dispatch plan
            - result: final batch result (only with wait=True)
            - error/error_code/errors: present on failure

    Examples:
        testexecution_batch_runs(
            batch_name="Nightly",
            runs=[
                {"runName": "Smoke", "planId": 1, "suiteIds": [2]},
                {"runName": "Regression", "planId": 1, "suiteIds": [3],
                 "dependsOn": ["Smoke"]},
            ],
        )
    """
    container = get_container()
    try:
        spec = _build_spec(
            batch_name, runs, execution_mode, max_concurrent_runs, continue_on_failure,
            global_timeout, default_max_retries, default_retry_delay, project,
        )
    except TypeError as e:
        return _error(ErrorCode.INVALID_INPUT, str(e))

    coordinator = container.new_coordinator()
    try:
        batch_id = coordinator.submit(spec)
    except BatchValidationError as e:
        return e.to_dict()

    response: Dict[str, Any] = {
        "success": True,
        "batch_id": batch_id.value,
        "batch_name": spec.batch_name,
        "execution_mode": spec.mode.value,
        "run_count": len(spec.runs),
        "plan": coordinator.plan.to_dict(),
    }
    if wait:
        container.registry.store(coordinator)
        result = await coordinator.run()
        response["result"] = result.to_dict()
        response["overall_status"] = result.overall_status.value if result.overall_status else None
        return response

    container.registry.launch(coordinator)
    response["status"] = "Running"
    response["guidance"] = "Poll testexecution_get_batch_status with this batch_id."
    return response


@mcp.tool
async def testexecution_get_batch_status(
    batch_id: str,
    include_events: bool = False,
) -> Dict[str, Any]:
    """Get the current status of a submitted batch.

    Safe to call while the batch is running; the result is a consistent
    snapshot. Finished batches stay available for a limited time.

    Args:
        batch_id: Id returned by testexecution_batch_runs.
        include_events: When True, include the batch's event log.

    Returns:
        Dict[str, Any]: Batch result (overall_status is null while running)
            with per-run status, attempt, skip_reason and last_error.
    """
    container = get_container()
    coordinator = container.registry.get(batch_id)
    if coordinator is None:
        return _error(ErrorCode.RESOURCE_NOT_FOUND, f"Batch '{batch_id}' not found")

    response: Dict[str, Any] = {"success": True, "is_running": coordinator.is_running}
    response.update(coordinator.snapshot().to_dict())
    if include_events:
        response["events"] = container.get_events(batch_id)
    return response


@mcp.tool
async def testexecution_plan_batch(
    batch_name: str,
    runs: RunDefinitions,
    execution_mode: ExecutionModeLiteral = "sequential",
    max_concurrent_runs: int | None = None,
    continue_on_failure: bool = False,
    global_timeout: float = 0,
    default_max_retries: int | None = None,
    default_retry_delay: float | None = None,
    project: str | None = None,
) -> Dict[str, Any]:
    """Validate a batch and show its dispatch plan without running anything.

    Takes the same arguments as testexecution_batch_runs (except wait).

    Returns:
        Dict[str, Any]: {success, valid, plan} or the validation errors.
    """
    try:
        spec = _build_spec(
            batch_name, runs, execution_mode, max_concurrent_runs, continue_on_failure,
            global_timeout, default_max_retries, default_retry_delay, project,
        )
    except TypeError as e:
        return _error(ErrorCode.INVALID_INPUT, str(e))

    report = BatchValidator().validate(spec)
    if not report.is_valid:
        return BatchValidationError(report.issues).to_dict()
    assert report.graph is not None
    plan = ExecutionPlanner(spec, report.graph).plan()
    return {
        "success": True,
        "valid": True,
        "batch_name": spec.batch_name,
        "run_count": len(spec.runs),
        "plan": plan.to_dict(),
    }


@mcp.tool
async def testexecution_list_batches() -> Dict[str, Any]:
    """List batches retained by the server, oldest first."""
    batches = []
    for coordinator in get_container().registry.list_batches():
        result = coordinator.snapshot()
        batches.append({
            "batch_id": result.batch_id,
            "batch_name": result.batch_name,
            "overall_status": result.overall_status.value if result.overall_status else None,
            "is_running": coordinator.is_running,
            "summary": result.summary,
        })
    return {"success": True, "count": len(batches), "batches": batches}


# ── Test run results ──────────────────────────────────────────────────


def _azure_client_or_error() -> Tuple[Optional[AzureDevOpsClient], Optional[Dict[str, Any]]]:
    try:
        return get_container().azure_client(), None
    except ConfigError as e:
        return None, _error(ErrorCode.MISSING_REQUIRED_FIELD, str(e))


def _execution_error(e: ExecutionError) -> Dict[str, Any]:
    payload = _error(e.code, str(e), retryable=e.retryable)
    if e.details:
        payload["details"] = e.details
    return payload


def _resolve_run_id(
    run_id: Optional[int], batch_id: Optional[str], run_name: Optional[str]
) -> Tuple[Optional[int], Optional[str], Optional[Dict[str, Any]]]:
    """Test run id and batch project, from ``run_id`` or a batch run's detail."""
    if run_id is not None:
        return run_id, None, None
    if not batch_id or not run_name:
        return None, None, _error(
            ErrorCode.MISSING_REQUIRED_FIELD, "Provide run_id, or batch_id and run_name",
        )
    coordinator = get_container().registry.get(batch_id)
    if coordinator is None:
        return None, None, _error(ErrorCode.RESOURCE_NOT_FOUND, f"Batch '{batch_id}' not found")
    state = coordinator.snapshot().get_run(run_name)
    if state is None:
        return None, None, _error(
            ErrorCode.RESOURCE_NOT_FOUND, f"Run '{run_name}' is not part of batch '{batch_id}'",
        )
    test_run_id = state.detail.get("test_run_id")
    if not isinstance(test_run_id, int):
        return None, None, _error(
            ErrorCode.RESOURCE_NOT_FOUND,
            f"Run '{run_name}' has no Azure DevOps test run (status {state.status.value})",
        )
    return test_run_id, coordinator.spec.project, None


@mcp.tool
async def testexecution_get_run_results(
    run_id: int | None = None,
    batch_id: str | None = None,
    run_name: str | None = None,
    project: str | None = None,
    include_details: bool = True,
    include_attachments: bool = False,
    top: Annotated[int, Field(ge=1, le=1000)] = 100,
    skip: Annotated[int, Field(ge=0)] = 0,
) -> Dict[str, Any]:
    """Retrieve the test results of an Azure DevOps test run.

    WHEN TO USE THIS TOOL:
    - To see which test cases failed in a run of a finished batch
    - To inspect any test run by id

    Identify the run either by run_id, or by batch_id and run_name of a
    batch run that has created a test run.

    Args:
        run_id: Azure DevOps test run id.
        batch_id: Batch id returned by testexecution_batch_runs.
        run_name: runName of a run inside that batch.
        project: Project (defaults to the batch's or the configured one).
        include_details: Also fetch the iterations of every result.
        include_attachments: Also list the attachments of every result.
        top: Maximum number of results (1-1000).
        skip: Number of results to skip.

    Returns:
        Dict[str, Any]: {success, test_run, results, summary, total_results}
            where summary counts outcomes and adds up durations.
    """
    resolved_id, batch_project, error = _resolve_run_id(run_id, batch_id, run_name)
    if error is not None:
        return error
    assert resolved_id is not None
    project = project or batch_project or get_container().config.project
    if not project:
        return _error(ErrorCode.MISSING_REQUIRED_FIELD, "No project given or configured")
    client, error = _azure_client_or_error()
    if error is not None:
        return error
    assert client is not None

    try:
        test_run = await asyncio.to_thread(client.get_test_run, project, resolved_id)
        results = await asyncio.to_thread(
            client.get_test_results, project, resolved_id, skip, top,
        )
    except ExecutionError as e:
        return _execution_error(e)

    summary = summarize_test_results(results)
    if include_details:
        results = [
            await _with_details(client, project, resolved_id, result, include_attachments)
            for result in results
        ]
    return {
        "success": True,
        "test_run_id": resolved_id,
        "test_run": test_run,
        "results": results,
        "summary": summary,
        "total_results": len(results),
    }


async def _with_details(
    client: AzureDevOpsClient,
    project: str,
    run_id: int,
    result: Dict[str, Any],
    include_attachments: bool,
) -> Dict[str, Any]:
    """A copy of *result* with iterations (and attachments).

    A failed detail lookup is reported in ``detail_error`` on that result.
    """
    detailed = dict(result)
    result_id = result.get("id")
    if result_id is None:
        return detailed
    try:
        detailed["iterations"] = await asyncio.to_thread(
            client.get_test_iterations, project, run_id, result_id,
        )
        if include_attachments:
            detailed["attachments"] = await asyncio.to_thread(
                client.get_result_attachments, project, run_id, result_id,
            )
    except ExecutionError as e:
        logger.warning("Details of result %s in run %s unavailable: %s", result_id, run_id, e)
        detailed["detail_error"] = str(e)
    return detailed


@mcp.tool
async def testexecution_update_result(
    run_id: int,
    test_case_result_id: int,
    outcome: TestOutcomeLiteral,
    project: str | None = None,
    comment: str | None = None,
    duration_in_ms: float | None = None,
    error_message: str | None = None,
    stack_trace: str | None = None,
    attachments: List[Dict[str, Any]] | None = None,
) -> Dict[str, Any]:
    """Record the outcome of one test case result and upload attachments.

    The result is marked Completed. Attachments are uploaded one by one
    after the update; a failed upload is reported without undoing the
    update.

    Args:
        run_id: Azure DevOps test run id.
        test_case_result_id: Id of the result inside the run.
        outcome: Passed, Failed, Blocked, NotExecuted, Warning, Error,
            NotApplicable, Paused, InProgress or NotImpacted.
        project: Project (defaults to the configured one).
        comment: Comment for the result.
        duration_in_ms: Execution duration in milliseconds.
        error_message: Error message of a failed test.
        stack_trace: Stack trace of a failed test.
        attachments: Objects with fileName and stream (base64 content).

    Returns:
        Dict[str, Any]: {success, updated_result, attachments_uploaded,
            attachment_errors}
    """
    project = project or get_container().config.project
    if not project:
        return _error(ErrorCode.MISSING_REQUIRED_FIELD, "No project given or configured")
    for attachment in attachments or []:
        if not attachment.get("fileName") or not attachment.get("stream"):
            return _error(
                ErrorCode.INVALID_INPUT, "Every attachment needs fileName and stream",
            )
    client, error = _azure_client_or_error()
    if error is not None:
        return error
    assert client is not None

    model: Dict[str, Any] = {
        "id": test_case_result_id,
        "outcome": outcome,
        "state": "Completed",
    }
    optional = {
        "comment": comment,
        "durationInMs": duration_in_ms,
        "errorMessage": error_message,
        "stackTrace": stack_trace,
    }
    model.update({k: v for k, v in optional.items() if v is not None})

    try:
        updated = await asyncio.to_thread(client.update_test_results, project, run_id, [model])
    except ExecutionError as e:
        return _execution_error(e)

    uploaded = 0
    attachment_errors: List[Dict[str, Any]] = []
    for attachment in attachments or []:
        try:
            await asyncio.to_thread(
                client.create_result_attachment, project, run_id, test_case_result_id,
                {"fileName": attachment["fileName"], "stream": attachment["stream"]},
            )
            uploaded += 1
        except ExecutionError as e:
            logger.warning("Attachment %s not uploaded: %s", attachment["fileName"], e)
            attachment_errors.append({"file_name": attachment["fileName"], "error": str(e)})

    return {
        "success": True,
        "updated_result": updated[0] if updated else None,
        "attachments_uploaded": uploaded,
        "attachment_errors": attachment_errors,
    }


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Test Run MCP server entry point."
    )
    parser.add_argument(
        "--transport",
        dest="transport",
        choices=["stdio", "http", "sse"],
        help="Transport to use for the MCP server (default: stdio).",
    )
    parser.add_argument(
        "--host",
        dest="host",
        help="Host/interface for HTTP transport (default 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        dest="port",
        type=int,
        help="Port for HTTP transport (default 8000).",
    )
    parser.add_argument(
        "--path",
        dest="path",
        help="Path for HTTP/streamable endpoints (default '/').",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        help="Log level for the MCP server (e.g., INFO, DEBUG).",
    )
    parser.add_argument(
        "--backend",
        dest="backend",
        choices=["azure_devops", "simulated"],
        help="Execution backend (default: azure_devops when an organization is configured).",
    )
    return parser


def main(argv: List[str] | None = None) -> None:
    """Start the Test Run MCP server."""

    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=(args.log_level or "INFO").upper())

    try:
        config = load_orchestrator_config(backend=args.backend)
    except ConfigError as e:
        parser.error(str(e))
    get_container().configure(config)
    logger.info("Starting Test Run MCP with configuration %s", config.describe())

    try:
        run_kwargs: Dict[str, Any] = {}

        # Default to stdio when no transport is provided
        transport = args.transport or "stdio"
        run_kwargs["transport"] = transport

        # log_level is accepted by both stdio and http
        if args.log_level:
            run_kwargs["log_level"] = args.log_level

        # Only pass host/port/path when using HTTP/SSE transports
        if transport != "stdio":
            if args.host:
                run_kwargs["host"] = args.host
            if args.port:
                run_kwargs["port"] = args.port
            if args.path:
                run_kwargs["path"] = args.path

        mcp.run(**run_kwargs)
    except KeyboardInterrupt:
        logger.info("Test Run MCP interrupted by user")


if __name__ == "__main__":
    main()
