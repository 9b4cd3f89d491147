"""Batch validation.

``BatchValidator`` runs a fixed table of checks over a ``BatchSpec`` and
collects every issue. Nothing is dispatched unless the report is clean.

Check order (and therefore issue order) is fixed::

    names -> types -> ranges -> dependencies
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .aggregates import BatchSpec
from .errors import (
    BatchValidationError,
    InvalidFieldValue,
    InvalidNumericRange,
    MissingRequiredField,
    ValidationIssue,
)
from .graph import DependencyGraph, DependencyGraphBuilder
from .value_objects import ExecutionMode

logger = logging.getLogger(__name__)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ValidationReport:
    """All issues found in a batch, plus its graph when the batch is valid."""
    issues: Tuple[ValidationIssue, ...] = field(default_factory=tuple)
    graph: Optional[DependencyGraph] = None

    @property
    def is_valid(self) -> bool:
        return not self.issues and self.graph is not None

    def raise_for_issues(self) -> None:
        if self.issues:
            raise BatchValidationError(self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "errors": [i.to_dict() for i in self.issues],
        }


# ── Checkers ─────────────────────────────────────────────────────────
# Each checker appends to ``issues``; the dependency checker also returns
# the graph it built.


def _check_names(spec: BatchSpec, issues: List[ValidationIssue], ctx: Dict[str, Any]) -> None:
    if not isinstance(spec.batch_name, str) or not spec.batch_name.strip():
        issues.append(MissingRequiredField(field_name="batch_name"))
    if not spec.runs:
        issues.append(MissingRequiredField(field_name="runs"))
    for i, run in enumerate(spec.runs):
        if not run.run_name:
            issues.append(MissingRequiredField(field_name="run_name", run_index=i))


def _check_types(spec: BatchSpec, issues: List[ValidationIssue], ctx: Dict[str, Any]) -> None:
    try:
        ExecutionMode.parse(spec.execution_mode)
    except ValueError:
        issues.append(InvalidFieldValue(
            field_name="execution_mode",
            value=getattr(spec.execution_mode, "value", spec.execution_mode),
            expected="'sequential' or 'parallel'",
        ))
    if not isinstance(spec.continue_on_failure, bool):
        issues.append(InvalidFieldValue(
            field_name="continue_on_failure",
            value=spec.continue_on_failure,
            expected="a boolean",
        ))
    if spec.project is not None and not isinstance(spec.project, str):
        issues.append(InvalidFieldValue(
            field_name="project", value=spec.project, expected="a string",
        ))
    for run in spec.runs:
        owner = run.run_name or None
        if not _is_int(run.priority):
            issues.append(InvalidFieldValue(
                field_name="priority", value=run.priority,
                expected="an integer", run_name=owner,
            ))
        if run.plan_id is not None and not _is_int(run.plan_id):
            issues.append(InvalidFieldValue(
                field_name="plan_id", value=run.plan_id,
                expected="an integer", run_name=owner,
            ))
        for name in ("suite_ids", "test_case_ids"):
            values = getattr(run, name)
            if not all(_is_int(v) for v in values):
                issues.append(InvalidFieldValue(
                    field_name=name, value=list(values),
                    expected="a list of integers", run_name=owner,
                ))
        if not all(isinstance(d, str) for d in run.depends_on):
            issues.append(InvalidFieldValue(
                field_name="depends_on", value=list(run.depends_on),
                expected="a list of run names", run_name=owner,
            ))


# field -> (predicate, constraint text)
_BATCH_RANGES: Mapping[str, Tuple[Callable[[Any], bool], str]] = {
    "max_concurrent_runs": (lambda v: _is_int(v) and v >= 1, "an integer >= 1"),
    "global_timeout": (lambda v: _is_number(v) and v >= 0, "a number >= 0"),
    "default_max_retries": (lambda v: v is None or (_is_int(v) and v >= 0), "an integer >= 0"),
    "default_retry_delay": (lambda v: v is None or (_is_number(v) and v >= 0), "a number >= 0"),
}

_RUN_RANGES: Mapping[str, Tuple[Callable[[Any], bool], str]] = {
    "max_retries": (lambda v: v is None or (_is_int(v) and v >= 0), "an integer >= 0"),
    "retry_delay": (lambda v: v is None or (_is_number(v) and v >= 0), "a number >= 0"),
}


def _check_ranges(spec: BatchSpec, issues: List[ValidationIssue], ctx: Dict[str, Any]) -> None:
    for name, (ok, constraint) in _BATCH_RANGES.items():
        value = getattr(spec, name)
        if not ok(value):
            issues.append(InvalidNumericRange(
                field_name=name, value=value, constraint=constraint,
            ))
    for run in spec.runs:
        for name, (ok, constraint) in _RUN_RANGES.items():
            value = getattr(run, name)
            if not ok(value):
                issues.append(InvalidNumericRange(
                    field_name=name, value=value, constraint=constraint,
                    run_name=run.run_name or None,
                ))


def _check_dependencies(spec: BatchSpec, issues: List[ValidationIssue], ctx: Dict[str, Any]) -> None:
    result = DependencyGraphBuilder().validate(spec.runs)
    issues.extend(result.issues)
    ctx["graph"] = result.graph


Checker = Callable[[BatchSpec, List[ValidationIssue], Dict[str, Any]], None]


class BatchValidator:
    """Validates a BatchSpec against the field contract and its graph.

    ``CHECKS`` maps a check kind to its checker. Checks always run in table
    order and never stop early, so the same batch yields the same issues.
    """

    CHECKS: Dict[str, Checker] = {
        "names": _check_names,
        "types": _check_types,
        "ranges": _check_ranges,
        "dependencies": _check_dependencies,
    }

    def validate(self, spec: BatchSpec) -> ValidationReport:
        issues: List[ValidationIssue] = []
        ctx: Dict[str, Any] = {}
        for kind, checker in self.CHECKS.items():
            before = len(issues)
            checker(spec, issues, ctx)
            if len(issues) > before:
                logger.debug("Check '%s' found %d issue(s)", kind, len(issues) - before)
        graph = ctx.get("graph") if not issues else None
        return ValidationReport(issues=tuple(issues), graph=graph)
