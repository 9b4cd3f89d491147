"""Batch Execution Domain Services.

Contains the BatchCoordinator (the dispatch loop), the BatchRegistry
(in-memory store of submitted batches) and the execution backend Protocol.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from .aggregates import BatchExecution, BatchResult, BatchSpec
from .entities import RunSpec
from .errors import ExecutionError, FatalExecutionError
from .events import (
    BatchAborted,
    BatchCompleted,
    BatchStarted,
    BatchTimedOut,
    RunCompleted,
    RunDispatched,
    RunRetryScheduled,
    RunSkipped,
)
from .planner import DispatchUnit, ExecutionPlan, ExecutionPlanner
from .retry import RetryPolicy
from .state_machine import RunStateMachine
from .validation import BatchValidator
from .value_objects import BatchId, RunStatus, SkipReason

logger = logging.getLogger(__name__)


# ── Protocol Definitions ──────────────────────────────────────────────

@dataclass(frozen=True)
class RunContext:
    """What a backend knows about the batch while executing one attempt."""
    __test__ = False  # Suppress pytest collection

    batch_id: str
    batch_name: str
    project: Optional[str] = None
    attempt: int = 1


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one backend attempt that ran to completion.

    ``succeeded=False`` means the tests ran and failed; the coordinator
    treats it as retryable. Errors that prevented execution are raised as
    ``ExecutionError`` instead.
    """
    __test__ = False  # Suppress pytest collection

    succeeded: bool
    detail: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ExecutionBackend(Protocol):
    """Protocol for running one test run attempt (anti-corruption layer)."""
    async def execute(self, run: RunSpec, context: RunContext) -> ExecutionOutcome: ...


EventPublisher = Optional[Callable[..., None]]

# (due time, sequence, run name)
RetryEntry = Tuple[float, int, str]

CANCELLED_ERROR = "Batch cancelled"


# ── BatchCoordinator ──────────────────────────────────────────────────

class BatchCoordinator:
    """Drives one batch from submission to a final BatchResult.

    Usage::

        coordinator = BatchCoordinator(backend)
        batch_id = coordinator.submit(spec)    # raises BatchValidationError
        result = await coordinator.run()

    ``snapshot()`` may be called at any time, including while ``run()`` is
    in progress. The RunState table is written only from ``run()``.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        validator: Optional[BatchValidator] = None,
        state_machine: Optional[RunStateMachine] = None,
        publisher: EventPublisher = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.validator = validator or BatchValidator()
        self.state_machine = state_machine or RunStateMachine()
        self.publisher = publisher
        self.clock = clock

        self._execution: Optional[BatchExecution] = None
        self._planner: Optional[ExecutionPlanner] = None
        self._running = False
        self._halted = False
        self._timed_out = False
        self._retry_seq = itertools.count()

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    def submit(self, spec: BatchSpec, batch_id: Optional[BatchId] = None) -> BatchId:
        """Validate *spec* and prepare it for ``run()``.

        Raises:
            BatchValidationError: With every issue found; nothing is dispatched
            RuntimeError: If this coordinator already holds a batch
        """
        if self._execution is not None:
            raise RuntimeError("BatchCoordinator already holds a batch")
        report = self.validator.validate(spec)
        if not report.is_valid:
            logger.info(
                "Batch '%s' rejected with %d issue(s)", spec.batch_name, len(report.issues)
            )
            report.raise_for_issues()
        assert report.graph is not None
        self._planner = ExecutionPlanner(spec, report.graph)
        self._execution = BatchExecution.create(spec, batch_id=batch_id, clock=self.clock)
        logger.info(
            "Batch %s submitted: '%s' with %d run(s), mode=%s",
            self._execution.batch_id, spec.batch_name, len(spec.runs), spec.mode.value,
        )
        return self._execution.batch_id

    @property
    def batch_id(self) -> Optional[BatchId]:
        return self._execution.batch_id if self._execution else None

    @property
    def spec(self) -> BatchSpec:
        return self._require().spec

    @property
    def plan(self) -> ExecutionPlan:
        self._require()
        assert self._planner is not None
        return self._planner.plan()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_complete(self) -> bool:
        return self._execution is not None and self._execution.overall_status is not None

    def snapshot(self) -> BatchResult:
        return self._require().snapshot()

    def _require(self) -> BatchExecution:
        if self._execution is None:
            raise RuntimeError("No batch submitted")
        return self._execution

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> BatchResult:
        """Dispatch every unit until all runs are terminal.

        Returns the final snapshot. Calling it again after completion
        returns the same result without dispatching anything. If the call
        is cancelled, in-flight runs fail with ``Batch cancelled``, waiting
        runs are skipped, the batch is finalized and the cancellation
        propagates.
        """
        execution = self._require()
        if execution.overall_status is not None:
            return execution.snapshot()
        if self._running:
            raise RuntimeError(f"Batch {execution.batch_id} is already running")

        self._running = True
        try:
            spec = execution.spec
            execution.start_clock()
            self._publish(BatchStarted(
                batch_id=str(execution.batch_id),
                batch_name=spec.batch_name,
                run_count=len(spec.runs),
                execution_mode=spec.mode.value,
                max_concurrent_runs=spec.max_concurrent_runs,
                continue_on_failure=spec.continue_on_failure,
                global_timeout=spec.global_timeout,
            ))
            try:
                await self._dispatch_units()
            except asyncio.CancelledError:
                self._on_cancel()
                self._finish()
                raise
            return self._finish()
        finally:
            self._running = False

    async def _dispatch_units(self) -> None:
        execution = self._require()
        assert self._planner is not None
        unit_index = 0
        while not self._halted:
            self._settle()
            if execution.is_timed_out():
                self._on_timeout()
                break
            unit = self._planner.next_unit(execution.states, unit_index + 1)
            if unit is None:
                break
            unit_index = unit.index
            await self._drive_unit(unit)

    def _finish(self) -> BatchResult:
        execution = self._require()
        # Pending/Ready runs left behind at this point can only come
        # from a halt that raced with promotion.
        self._settle()
        leftover = execution.runs_with(RunStatus.PENDING, RunStatus.READY)
        if leftover:
            reason = SkipReason.BATCH_TIMEOUT if self._timed_out else SkipReason.BATCH_ABORTED
            self._skip_all(leftover, reason)

        status = execution.finalize()
        result = execution.snapshot()
        counts = result.counts
        self._publish(BatchCompleted(
            batch_id=result.batch_id,
            overall_status=status.value,
            succeeded=counts[RunStatus.SUCCEEDED.value],
            failed=counts[RunStatus.FAILED.value],
            skipped=counts[RunStatus.SKIPPED.value],
            total_time_ms=int(result.elapsed_seconds * 1000),
        ))
        logger.info("Batch %s finished: %s (%s)", result.batch_id, status.value, result.summary)
        return result

    async def _drive_unit(self, unit: DispatchUnit) -> None:
        """Run one sequence slot or wave until all its members are terminal.

        In-flight attempts are asyncio tasks; pending retries sit in a
        min-heap keyed by due time. The loop waits for whichever comes
        first: an attempt finishing, a retry becoming due, or the global
        deadline.
        """
        execution = self._require()
        order = {name: pos for pos, name in enumerate(unit.run_names)}
        tasks: Dict[asyncio.Task, str] = {}
        retries: List[RetryEntry] = []

        logger.info("Dispatching unit %d: %s", unit.index, ", ".join(unit.run_names))
        for name in unit.run_names:
            state = execution.state(name)
            if state.status != RunStatus.READY:
                continue
            self.state_machine.start(state, dispatch_index=unit.index)
            tasks[self._launch(name)] = name

        try:
            while tasks or retries:
                now = self.clock()
                while retries and retries[0][0] <= now:
                    _, _, name = heapq.heappop(retries)
                    self.state_machine.start(execution.state(name))
                    tasks[self._launch(name)] = name

                timeout = self._wait_timeout(retries, now)
                if tasks:
                    done, _ = await asyncio.wait(
                        set(tasks), timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
                    )
                    for task in sorted(done, key=lambda t: order.get(tasks[t], 0)):
                        name = tasks.pop(task)
                        self._complete_attempt(name, task, retries)
                elif timeout is not None:
                    await asyncio.sleep(timeout)

                if not self._timed_out and execution.is_timed_out():
                    self._on_timeout()
        finally:
            # Only non-empty when the loop was interrupted (cancellation)
            if tasks:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    def _wait_timeout(self, retries: List[RetryEntry], now: float) -> Optional[float]:
        """Seconds until the next retry is due or the global deadline."""
        bounds: List[float] = []
        if retries:
            bounds.append(max(0.0, retries[0][0] - now))
        if not self._timed_out:
            remaining = self._require().remaining_seconds()
            if remaining is not None:
                bounds.append(remaining)
        return min(bounds) if bounds else None

    def _launch(self, run_name: str) -> asyncio.Task:
        execution = self._require()
        state = execution.state(run_name)
        run = execution.spec.get_run(run_name)
        assert run is not None
        context = RunContext(
            batch_id=str(execution.batch_id),
            batch_name=execution.spec.batch_name,
            project=execution.spec.project,
            attempt=state.attempt,
        )
        logger.info("Run %s: attempt %d dispatched", run_name, state.attempt)
        self._publish(RunDispatched(
            batch_id=str(execution.batch_id),
            run_name=run_name,
            attempt=state.attempt,
            dispatch_index=state.dispatch_index,
        ))
        return asyncio.create_task(self._attempt(run, context))

    async def _attempt(self, run: RunSpec, context: RunContext) -> ExecutionOutcome:
        """Call the backend; anything outside the error contract is fatal."""
        try:
            return await self.backend.execute(run, context)
        except ExecutionError:
            raise
        except Exception as e:
            raise FatalExecutionError(
                f"Backend error: {type(e).__name__}: {e}"
            ) from e

    def _complete_attempt(
        self, run_name: str, task: asyncio.Task, retries: List[RetryEntry]
    ) -> None:
        execution = self._require()
        spec = execution.spec
        state = execution.state(run_name)
        run = spec.get_run(run_name)
        assert run is not None

        try:
            outcome = task.result()
        except ExecutionError as e:
            error = str(e)
            retryable = e.retryable
            detail = e.to_dict()
        else:
            if outcome.succeeded:
                self.state_machine.succeed(state, outcome.detail)
                logger.info("Run %s succeeded on attempt %d", run_name, state.attempt)
                self._publish(RunCompleted(
                    batch_id=str(execution.batch_id),
                    run_name=run_name,
                    status=state.status.value,
                    attempts=state.attempt,
                ))
                return
            error = str(outcome.detail.get("error") or "Test run reported failures")
            retryable = True
            detail = outcome.detail

        can_retry = retryable and RetryPolicy.can_retry(state.attempt, run, spec)
        delay = RetryPolicy.effective_retry_delay(run, spec)
        due = self.clock() + delay
        status = self.state_machine.fail_attempt(
            state, error, can_retry=can_retry, retry_at=due if can_retry else None,
            detail=detail,
        )

        if status == RunStatus.RETRYING:
            heapq.heappush(retries, (due, next(self._retry_seq), run_name))
            logger.info(
                "Run %s attempt %d failed, retrying in %.1fs: %s",
                run_name, state.attempt, delay, error,
            )
            self._publish(RunRetryScheduled(
                batch_id=str(execution.batch_id),
                run_name=run_name,
                failed_attempt=state.attempt,
                delay_seconds=delay,
                error=error,
            ))
            return

        logger.warning("Run %s failed after %d attempt(s): %s", run_name, state.attempt, error)
        self._publish(RunCompleted(
            batch_id=str(execution.batch_id),
            run_name=run_name,
            status=state.status.value,
            attempts=state.attempt,
            error=error,
        ))
        self._settle()
        if not spec.continue_on_failure and not self._halted:
            self._on_abort(run_name)

    # ------------------------------------------------------------------
    # Propagation, abort and timeout
    # ------------------------------------------------------------------

    def _settle(self) -> None:
        """Skip runs blocked by a failed dependency, then promote ready runs.

        Skips cascade: a skipped run blocks its own dependents in the next
        pass, so this loops until nothing changes.
        """
        execution = self._require()
        assert self._planner is not None
        while True:
            blocked = self._planner.blocked_runs(execution.states)
            if not blocked:
                break
            self._skip_all(blocked, SkipReason.DEPENDENCY_FAILED)
        if self._halted:
            return
        for name in self._planner.ready_set(execution.states):
            self.state_machine.mark_ready(execution.state(name))

    def _skip_all(self, run_names: List[str], reason: SkipReason) -> None:
        execution = self._require()
        for name in run_names:
            self.state_machine.skip(execution.state(name), reason)
            logger.info("Run %s skipped: %s", name, reason.value)
            self._publish(RunSkipped(
                batch_id=str(execution.batch_id), run_name=name, reason=reason.value,
            ))

    def _on_abort(self, failed_run: str) -> None:
        execution = self._require()
        self._halted = True
        skipped = execution.runs_with(RunStatus.PENDING, RunStatus.READY)
        logger.warning(
            "Batch %s aborted after run %s failed; skipping %d run(s)",
            execution.batch_id, failed_run, len(skipped),
        )
        self._skip_all(skipped, SkipReason.BATCH_ABORTED)
        self._publish(BatchAborted(
            batch_id=str(execution.batch_id),
            failed_run=failed_run,
            skipped_runs=tuple(skipped),
        ))

    def _on_timeout(self) -> None:
        execution = self._require()
        self._halted = True
        self._timed_out = True
        skipped = execution.runs_with(RunStatus.PENDING, RunStatus.READY)
        logger.warning(
            "Batch %s exceeded its %ss timeout; skipping %d run(s)",
            execution.batch_id, execution.spec.global_timeout, len(skipped),
        )
        self._skip_all(skipped, SkipReason.BATCH_TIMEOUT)
        self._publish(BatchTimedOut(
            batch_id=str(execution.batch_id),
            elapsed_ms=int(execution.elapsed_seconds * 1000),
            timeout_ms=int(execution.spec.global_timeout * 1000),
            skipped_runs=tuple(skipped),
        ))

    def _on_cancel(self) -> None:
        execution = self._require()
        self._halted = True
        in_flight = [n for n, s in execution.states.items() if s.status.is_in_flight]
        logger.warning(
            "Batch %s cancelled with %d run(s) in flight", execution.batch_id, len(in_flight),
        )
        for name in in_flight:
            state = self.state_machine.cancel(execution.state(name), CANCELLED_ERROR)
            self._publish(RunCompleted(
                batch_id=str(execution.batch_id),
                run_name=name,
                status=state.status.value,
                attempts=state.attempt,
                error=CANCELLED_ERROR,
            ))
        self._skip_all(
            execution.runs_with(RunStatus.PENDING, RunStatus.READY), SkipReason.BATCH_ABORTED,
        )

    def _publish(self, event: Any) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher(event)
        except Exception as e:
            logger.warning("Event publisher failed for %s: %s", type(event).__name__, e)


# ── BatchRegistry ─────────────────────────────────────────────────────

@dataclass
class _RegistryEntry:
    coordinator: BatchCoordinator
    registered_at: float
    task: Optional[asyncio.Task] = None


@dataclass
class BatchRegistry:
    """In-memory TTL-based storage of submitted batches.

    Completed batches expire ``ttl_seconds`` after registration and are the
    first to go when the registry is full. Running batches are never evicted.
    ``on_evict`` is called with the batch id of every entry that is dropped,
    whether it expired, was evicted or was removed.
    """
    ttl_seconds: float = 3600.0
    max_batches: int = 50
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    on_evict: Optional[Callable[[str], None]] = field(default=None, repr=False)
    _entries: Dict[str, _RegistryEntry] = field(default_factory=dict)

    def store(self, coordinator: BatchCoordinator) -> None:
        """Store a submitted coordinator, evicting the oldest completed one if full."""
        batch_id = coordinator.batch_id
        if batch_id is None:
            raise ValueError("Only submitted batches can be stored")
        self._cleanup_expired()
        if len(self._entries) >= self.max_batches:
            self._evict_oldest()
        self._entries[batch_id.value] = _RegistryEntry(
            coordinator=coordinator, registered_at=self.clock(),
        )

    def launch(self, coordinator: BatchCoordinator) -> asyncio.Task:
        """Store *coordinator* and run it as a background task."""
        self.store(coordinator)
        assert coordinator.batch_id is not None
        entry = self._entries[coordinator.batch_id.value]
        entry.task = asyncio.create_task(coordinator.run())
        entry.task.add_done_callback(self._log_task_failure)
        return entry.task

    def get(self, batch_id: str) -> Optional[BatchCoordinator]:
        """Retrieve a coordinator, returning None if expired or missing."""
        entry = self._entries.get(batch_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            self._drop(batch_id)
            return None
        return entry.coordinator

    def remove(self, batch_id: str) -> bool:
        """Remove a batch. Returns True if found."""
        if batch_id not in self._entries:
            return False
        self._drop(batch_id)
        return True

    def list_batches(self) -> List[BatchCoordinator]:
        """Live coordinators, oldest first."""
        self._cleanup_expired()
        entries = sorted(self._entries.values(), key=lambda e: e.registered_at)
        return [e.coordinator for e in entries]

    @property
    def count(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: _RegistryEntry) -> bool:
        return (
            entry.coordinator.is_complete
            and self.clock() - entry.registered_at > self.ttl_seconds
        )

    def _cleanup_expired(self) -> None:
        expired = [bid for bid, e in self._entries.items() if self._is_expired(e)]
        for bid in expired:
            self._drop(bid)

    def _evict_oldest(self) -> None:
        completed = [bid for bid, e in self._entries.items() if e.coordinator.is_complete]
        if not completed:
            logger.warning(
                "Batch registry holds %d running batches; exceeding max_batches=%d",
                len(self._entries), self.max_batches,
            )
            return
        oldest_id = min(completed, key=lambda bid: self._entries[bid].registered_at)
        self._drop(oldest_id)

    def _drop(self, batch_id: str) -> None:
        del self._entries[batch_id]
        if self.on_evict is not None:
            self.on_evict(batch_id)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Batch task failed: %s", exc, exc_info=exc)
