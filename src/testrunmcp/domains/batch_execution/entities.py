"""Batch Execution Domain Entities.

Entities have identity within a batch: the run name. ``RunSpec`` is the
immutable request for one test run; ``RunState`` is its mutable lifecycle
record, owned by the batch coordinator.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .value_objects import RunStatus, SkipReason

# camelCase tool input -> dataclass field
_RUN_FIELD_ALIASES: Dict[str, str] = {
    "runName": "run_name",
    "planId": "plan_id",
    "suiteIds": "suite_ids",
    "dependsOn": "depends_on",
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay",
    "testCaseIds": "test_case_ids",
    "buildId": "build_id",
    "configurationId": "configuration_id",
}

_TUPLE_FIELDS = ("suite_ids", "depends_on", "test_case_ids")


def _as_tuple(value: Any) -> Any:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class RunSpec:
    """Specification of one test run inside a batch.

    Attributes:
        run_name: Unique name within the batch, used for dependencies
        plan_id: Test plan the run executes
        suite_ids: Test suites whose points are included in the run
        priority: Tie-break hint, lower values dispatch earlier
        depends_on: Names of runs that must succeed first
        max_retries: Per-run retry override (None = batch default)
        retry_delay: Per-run retry delay override in seconds
        test_case_ids: Optional subset of test cases within the suites
        build_id: Build to associate with the created test run
        configuration_id: Test configuration for the created test run
        automated: Whether the created run is an automated run
    """
    __test__ = False  # Suppress pytest collection

    run_name: str
    plan_id: Optional[int] = None
    suite_ids: Tuple[int, ...] = ()
    priority: int = 0
    depends_on: Tuple[str, ...] = ()
    max_retries: Optional[int] = None
    retry_delay: Optional[float] = None
    test_case_ids: Tuple[int, ...] = ()
    build_id: Optional[int] = None
    configuration_id: Optional[int] = None
    automated: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunSpec:
        """Build a RunSpec from tool input.

        Accepts camelCase and snake_case keys. Values are not range-checked
        here; the batch validator reports every problem at once.
        """
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _RUN_FIELD_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = value
        for name in _TUPLE_FIELDS:
            if name in kwargs:
                kwargs[name] = _as_tuple(kwargs[name])
        if kwargs.get("priority") is None:
            kwargs["priority"] = 0
        run_name = kwargs.get("run_name")
        kwargs["run_name"] = "" if run_name is None else str(run_name).strip()
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict for MCP responses."""
        d: Dict[str, Any] = {
            "run_name": self.run_name,
            "plan_id": self.plan_id,
            "suite_ids": list(self.suite_ids),
            "priority": self.priority,
            "depends_on": list(self.depends_on),
        }
        if self.max_retries is not None:
            d["max_retries"] = self.max_retries
        if self.retry_delay is not None:
            d["retry_delay"] = self.retry_delay
        if self.test_case_ids:
            d["test_case_ids"] = list(self.test_case_ids)
        if self.build_id is not None:
            d["build_id"] = self.build_id
        if self.configuration_id is not None:
            d["configuration_id"] = self.configuration_id
        if self.automated:
            d["automated"] = True
        return d


@dataclass
class RunState:
    """Lifecycle record of one run.

    Mutated only through ``RunStateMachine`` transitions driven by the
    batch coordinator. Snapshots handed to callers are copies.

    Attributes:
        run_name: Name of the run this state belongs to
        status: Current lifecycle status
        attempt: 1-based attempt counter
        started_at: When the first attempt was dispatched
        completed_at: When the run reached a terminal status
        last_error: Message of the most recent failed attempt
        skip_reason: Why the run was skipped, if it was
        dispatch_index: 1-based sequence slot or wave number
        retry_at: Monotonic due time of a scheduled retry (advisory)
        detail: Backend detail of the most recent attempt
    """
    __test__ = False  # Suppress pytest collection

    run_name: str
    status: RunStatus = RunStatus.PENDING
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    dispatch_index: Optional[int] = None
    retry_at: Optional[float] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> RunState:
        return replace(self, detail=dict(self.detail))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict for MCP responses."""
        d: Dict[str, Any] = {
            "run_name": self.run_name,
            "status": self.status.value,
            "attempt": self.attempt,
        }
        if self.dispatch_index is not None:
            d["dispatch_index"] = self.dispatch_index
        if self.started_at:
            d["started_at"] = self.started_at.isoformat()
        if self.completed_at:
            d["completed_at"] = self.completed_at.isoformat()
        if self.last_error:
            d["last_error"] = self.last_error
        if self.skip_reason:
            d["skip_reason"] = self.skip_reason.value
        if self.detail:
            d["detail"] = dict(self.detail)
        return d


def initial_states(runs: Iterable[RunSpec]) -> Dict[str, RunState]:
    """Fresh PENDING states keyed by run name, in batch order."""
    return {run.run_name: RunState(run_name=run.run_name) for run in runs}
