"""Batch Execution Domain Aggregate Roots.

- **BatchSpec**: the immutable request, a named set of run specifications
  plus the dispatch and failure policy.
- **BatchExecution**: the RunState table of one submitted batch, with the
  batch clock and result aggregation. Owned by a single coordinator.
- **BatchResult**: a read-only snapshot of a BatchExecution, safe to hand
  to pollers while the batch is still running.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from testrunmcp.utils.formatting import format_execution_duration

from .entities import RunSpec, RunState, initial_states
from .value_objects import (
    BatchId,
    ExecutionMode,
    OverallStatus,
    RunStatus,
)

_BATCH_FIELD_ALIASES: Dict[str, str] = {
    "batchName": "batch_name",
    "executionMode": "execution_mode",
    "maxConcurrentRuns": "max_concurrent_runs",
    "continueOnFailure": "continue_on_failure",
    "globalTimeout": "global_timeout",
    "defaultMaxRetries": "default_max_retries",
    "defaultRetryDelay": "default_retry_delay",
}

DEFAULT_MAX_CONCURRENT_RUNS = 3


@dataclass(frozen=True)
class BatchSpec:
    """A named batch of inter-dependent test runs.

    Attributes:
        batch_name: Human-readable batch name
        runs: Run specifications in submission order
        execution_mode: Sequential or parallel dispatch; an unparseable raw
            value is kept as-is so validation can report it
        max_concurrent_runs: Wave size cap in parallel mode
        continue_on_failure: Keep dispatching independent runs after a failure
        global_timeout: Wall-clock budget in seconds, 0 disables the limit
        default_max_retries: Retry count for runs without an override
        default_retry_delay: Retry delay (seconds) for runs without an override
        project: Test-management project the runs belong to
    """
    __test__ = False  # Suppress pytest collection

    batch_name: str
    runs: Tuple[RunSpec, ...]
    execution_mode: Union[ExecutionMode, str] = ExecutionMode.SEQUENTIAL
    max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS
    continue_on_failure: bool = False
    global_timeout: float = 0
    default_max_retries: Optional[int] = None
    default_retry_delay: Optional[float] = None
    project: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BatchSpec:
        """Build a BatchSpec from tool or file input.

        Accepts camelCase and snake_case keys. Only structural problems
        raise; value problems are left for the batch validator.

        Raises:
            TypeError: If ``runs`` is not a list of objects
        """
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _BATCH_FIELD_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None:
                kwargs[name] = value

        raw_runs = kwargs.get("runs") or []
        if not isinstance(raw_runs, (list, tuple)):
            raise TypeError("runs must be a list of run objects")
        runs: List[RunSpec] = []
        for i, raw in enumerate(raw_runs):
            if isinstance(raw, RunSpec):
                runs.append(raw)
            elif isinstance(raw, Mapping):
                runs.append(RunSpec.from_dict(raw))
            else:
                raise TypeError(f"runs[{i}] must be an object, got {type(raw).__name__}")
        kwargs["runs"] = tuple(runs)

        mode = kwargs.get("execution_mode", ExecutionMode.SEQUENTIAL)
        try:
            kwargs["execution_mode"] = ExecutionMode.parse(mode)
        except ValueError:
            kwargs["execution_mode"] = mode
        kwargs.setdefault("batch_name", "")
        return cls(**kwargs)

    @property
    def run_names(self) -> List[str]:
        return [run.run_name for run in self.runs]

    @property
    def mode(self) -> ExecutionMode:
        """The parsed execution mode (only valid after validation)."""
        return ExecutionMode.parse(self.execution_mode)

    def get_run(self, run_name: str) -> Optional[RunSpec]:
        for run in self.runs:
            if run.run_name == run_name:
                return run
        return None

    def to_dict(self) -> Dict[str, Any]:
        mode = self.execution_mode
        return {
            "batch_name": self.batch_name,
            "execution_mode": getattr(mode, "value", mode),
            "max_concurrent_runs": self.max_concurrent_runs,
            "continue_on_failure": self.continue_on_failure,
            "global_timeout": self.global_timeout,
            "default_max_retries": self.default_max_retries,
            "default_retry_delay": self.default_retry_delay,
            "project": self.project,
            "runs": [r.to_dict() for r in self.runs],
        }


def compute_overall_status(
    states: Iterable[RunState], continue_on_failure: bool
) -> OverallStatus:
    """Aggregate terminal run states into the batch outcome.

    - SUCCEEDED: every run succeeded
    - PARTIALLY_SUCCEEDED: at least one success and at least one failed or
      skipped run while ``continue_on_failure`` is enabled
    - FAILED: anything else
    """
    statuses = [s.status for s in states]
    succeeded = sum(1 for s in statuses if s == RunStatus.SUCCEEDED)
    if statuses and succeeded == len(statuses):
        return OverallStatus.SUCCEEDED
    unsuccessful = any(s in (RunStatus.FAILED, RunStatus.SKIPPED) for s in statuses)
    if continue_on_failure and succeeded and unsuccessful:
        return OverallStatus.PARTIALLY_SUCCEEDED
    return OverallStatus.FAILED


@dataclass(frozen=True)
class BatchResult:
    """Read-only snapshot of a batch, partial while running."""
    __test__ = False  # Suppress pytest collection

    batch_id: str
    batch_name: str
    runs: Tuple[RunState, ...]
    overall_status: Optional[OverallStatus]
    execution_mode: ExecutionMode
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.overall_status is not None

    def get_run(self, run_name: str) -> Optional[RunState]:
        for state in self.runs:
            if state.run_name == run_name:
                return state
        return None

    @property
    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in RunStatus}
        for state in self.runs:
            counts[state.status.value] += 1
        return counts

    @property
    def summary(self) -> str:
        """Human-readable one-line summary."""
        total = len(self.runs)
        c = self.counts
        duration = format_execution_duration(int(self.elapsed_seconds * 1000))
        succeeded = c[RunStatus.SUCCEEDED.value]
        if not self.is_complete:
            done = sum(1 for s in self.runs if s.is_terminal)
            return f"{done}/{total} runs finished, {succeeded} succeeded ({duration} elapsed)"
        if self.overall_status == OverallStatus.SUCCEEDED:
            return f"{succeeded}/{total} runs succeeded in {duration}"
        return (
            f"{succeeded}/{total} runs succeeded, "
            f"{c[RunStatus.FAILED.value]} failed, "
            f"{c[RunStatus.SKIPPED.value]} skipped in {duration}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the snapshot for MCP tool output."""
        return {
            "batch_id": self.batch_id,
            "batch_name": self.batch_name,
            "overall_status": self.overall_status.value if self.overall_status else None,
            "is_complete": self.is_complete,
            "execution_mode": self.execution_mode.value,
            "summary": self.summary,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_time_ms": int(self.elapsed_seconds * 1000),
            "counts": self.counts,
            "runs": [s.to_dict() for s in self.runs],
        }


@dataclass
class BatchExecution:
    """Aggregate root holding the RunState table of one batch.

    Lifecycle:
        1. ``create()`` from a validated BatchSpec
        2. ``start_clock()`` when the first unit is about to be dispatched
        3. run states are mutated by the coordinator's state machine
        4. ``finalize()`` once every run is terminal

    Concurrency:
        Single writer. Only the owning coordinator mutates ``states``;
        everybody else reads ``snapshot()`` copies.
    """
    __test__ = False  # Suppress pytest collection

    batch_id: BatchId
    spec: BatchSpec
    states: Dict[str, RunState]
    overall_status: Optional[OverallStatus] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _start_time: Optional[float] = field(default=None, repr=False)
    _end_time: Optional[float] = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        spec: BatchSpec,
        batch_id: Optional[BatchId] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> BatchExecution:
        return cls(
            batch_id=batch_id or BatchId.generate(),
            spec=spec,
            states=initial_states(spec.runs),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Clock management
    # ------------------------------------------------------------------

    def start_clock(self) -> None:
        """Begin timeout tracking."""
        self._start_time = self.clock()
        self.started_at = datetime.now()

    @property
    def elapsed_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        end = self._end_time if self._end_time is not None else self.clock()
        return end - self._start_time

    def remaining_seconds(self) -> Optional[float]:
        """Seconds left in the global budget, None when unlimited."""
        if not self.spec.global_timeout:
            return None
        return max(0.0, self.spec.global_timeout - self.elapsed_seconds)

    def is_timed_out(self) -> bool:
        if not self.spec.global_timeout or self._start_time is None:
            return False
        return self.elapsed_seconds > self.spec.global_timeout

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def state(self, run_name: str) -> RunState:
        return self.states[run_name]

    def runs_with(self, *statuses: RunStatus) -> List[str]:
        """Names of runs currently in any of *statuses*, in batch order."""
        return [name for name, s in self.states.items() if s.status in statuses]

    def all_terminal(self) -> bool:
        return all(s.is_terminal for s in self.states.values())

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self) -> OverallStatus:
        """Compute the overall status. Idempotent.

        Raises:
            ValueError: If some run is not terminal yet
        """
        if self.overall_status is not None:
            return self.overall_status
        if not self.all_terminal():
            pending = [n for n, s in self.states.items() if not s.is_terminal]
            raise ValueError(f"Cannot finalize batch with non-terminal runs: {pending}")
        self.overall_status = compute_overall_status(
            self.states.values(), self.spec.continue_on_failure
        )
        self._end_time = self.clock()
        self.completed_at = datetime.now()
        return self.overall_status

    def snapshot(self) -> BatchResult:
        return BatchResult(
            batch_id=self.batch_id.value,
            batch_name=self.spec.batch_name,
            runs=tuple(s.copy() for s in self.states.values()),
            overall_status=self.overall_status,
            execution_mode=self.spec.mode,
            started_at=self.started_at,
            completed_at=self.completed_at,
            elapsed_seconds=self.elapsed_seconds,
        )
