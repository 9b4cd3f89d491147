"""Command line runner for batch definition files.

Usage::

    test-run-batch nightly.yaml --plan-only
    test-run-batch nightly.yaml --backend simulated --outcome Smoke=fail,pass
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from testrunmcp.backends import SimulatedBackend
from testrunmcp.batch_file import BatchFileError, load_batch_file
from testrunmcp.config import ConfigError, load_orchestrator_config
from testrunmcp.container import get_container
from testrunmcp.domains.batch_execution import (
    BatchCoordinator,
    BatchSpec,
    BatchValidationError,
    BatchValidator,
    ExecutionPlanner,
    OverallStatus,
)

logger = logging.getLogger(__name__)

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="test-run-batch",
        description="Validate, plan and run a batch of test runs from a YAML or JSON file.",
    )
    parser.add_argument("batch_file", help="Path to a .yaml/.yml or .json batch definition.")
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Validate the batch and print its dispatch plan without running it.",
    )
    parser.add_argument(
        "--backend",
        choices=["azure_devops", "simulated"],
        help="Execution backend (default: azure_devops when an organization is configured).",
    )
    parser.add_argument(
        "--project",
        help="Project to use when the batch file does not name one.",
    )
    parser.add_argument(
        "--outcome",
        action="append",
        default=[],
        metavar="RUN=OUTCOMES",
        help=(
            "Scripted outcomes for the simulated backend, e.g. Smoke=fail,pass. "
            "Outcomes: pass, fail, transient, fatal. May be repeated."
        ),
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="WARNING",
        help="Log level (e.g., INFO, DEBUG). Default WARNING.",
    )
    return parser


def _parse_outcomes(values: List[str]) -> Dict[str, List[str]]:
    outcomes: Dict[str, List[str]] = {}
    for value in values:
        name, sep, script = value.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"--outcome expects RUN=OUTCOMES, got {value!r}")
        outcomes[name.strip()] = [s.strip() for s in script.split(",") if s.strip()]
    return outcomes


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _plan(spec: BatchSpec) -> int:
    report = BatchValidator().validate(spec)
    if not report.is_valid:
        _print(BatchValidationError(report.issues).to_dict())
        return EXIT_INVALID
    assert report.graph is not None
    plan = ExecutionPlanner(spec, report.graph).plan()
    _print({"success": True, "valid": True, "plan": plan.to_dict()})
    return EXIT_SUCCEEDED


async def _run(spec: BatchSpec, coordinator: BatchCoordinator) -> int:
    try:
        coordinator.submit(spec)
    except BatchValidationError as e:
        _print(e.to_dict())
        return EXIT_INVALID
    result = await coordinator.run()
    _print({"success": result.overall_status == OverallStatus.SUCCEEDED, **result.to_dict()})
    if result.overall_status == OverallStatus.SUCCEEDED:
        return EXIT_SUCCEEDED
    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of ``test-run-batch``. Returns the process exit code."""

    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), stream=sys.stderr)

    try:
        spec = load_batch_file(args.batch_file)
    except BatchFileError as e:
        _print({"success": False, "error": str(e), "error_code": "INVALID_INPUT"})
        return EXIT_INVALID
    if args.project and not spec.project:
        spec = replace(spec, project=args.project)

    if args.plan_only:
        return _plan(spec)

    container = get_container()
    if args.outcome:
        try:
            container.set_backend(SimulatedBackend(outcomes=_parse_outcomes(args.outcome)))
        except ValueError as e:
            parser.error(str(e))
    else:
        try:
            container.configure(load_orchestrator_config(backend=args.backend))
        except ConfigError as e:
            parser.error(str(e))

    return asyncio.run(_run(spec, container.new_coordinator()))


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
