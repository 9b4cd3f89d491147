"""Execution planning.

The planner works on a validated batch and its dependency graph. It answers
two questions:

- ``plan()``: the static dispatch order assuming every run succeeds. Used
  for previews and to fix the sequential order.
- ``ready_set`` / ``blocked_runs`` / ``next_unit``: what can be dispatched
  right now given the live run states. Used by the coordinator.

Ties are always broken by (priority, batch order), lower first.
"""
from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .aggregates import BatchSpec
from .entities import RunState
from .graph import DependencyGraph
from .value_objects import ExecutionMode, RunStatus

_WAITING = (RunStatus.PENDING, RunStatus.READY)
_BLOCKING = (RunStatus.FAILED, RunStatus.SKIPPED)


@dataclass(frozen=True)
class DispatchUnit:
    """A group of runs dispatched together.

    One run per unit in sequential mode, one wave in parallel mode.
    ``index`` is 1-based.
    """
    __test__ = False  # Suppress pytest collection

    index: int
    run_names: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.run_names)

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "runs": list(self.run_names)}


@dataclass(frozen=True)
class ExecutionPlan:
    """Static dispatch plan of a batch."""
    __test__ = False  # Suppress pytest collection

    mode: ExecutionMode
    units: Tuple[DispatchUnit, ...]

    @property
    def order(self) -> List[str]:
        """Every run name in dispatch order."""
        return [name for unit in self.units for name in unit.run_names]

    def to_dict(self) -> Dict[str, Any]:
        key = "waves" if self.mode == ExecutionMode.PARALLEL else "sequence"
        return {
            "execution_mode": self.mode.value,
            "order": self.order,
            key: [u.to_dict() for u in self.units],
        }


class ExecutionPlanner:
    """Computes static plans and dynamic ready sets for one batch."""

    def __init__(self, spec: BatchSpec, graph: DependencyGraph) -> None:
        self.spec = spec
        self.graph = graph
        self.mode = spec.mode
        self.max_concurrent = max(1, int(spec.max_concurrent_runs))
        self._priority = [int(run.priority) for run in spec.runs]
        self._static: Optional[ExecutionPlan] = None

    def _key(self, node_id: int) -> Tuple[int, int]:
        return (self._priority[node_id], node_id)

    # ------------------------------------------------------------------
    # Static plan
    # ------------------------------------------------------------------

    def plan(self) -> ExecutionPlan:
        """Dispatch plan assuming every run succeeds. Cached."""
        if self._static is None:
            if self.mode == ExecutionMode.PARALLEL:
                units = self._plan_waves()
            else:
                units = self._plan_sequence()
            self._static = ExecutionPlan(mode=self.mode, units=tuple(units))
        return self._static

    def _plan_sequence(self) -> List[DispatchUnit]:
        """Kahn's algorithm with a (priority, batch order) min-heap."""
        graph = self.graph
        remaining = [len(deps) for deps in graph.dependencies]
        heap = [self._key(i) for i, n in enumerate(remaining) if n == 0]
        heapq.heapify(heap)
        units: List[DispatchUnit] = []
        while heap:
            _, node_id = heapq.heappop(heap)
            units.append(DispatchUnit(index=len(units) + 1, run_names=(graph.names[node_id],)))
            for dependent in graph.dependents[node_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, self._key(dependent))
        return units

    def _plan_waves(self) -> List[DispatchUnit]:
        """Successive capped waves.

        The candidates of a wave are every unplanned run whose dependencies
        are all in earlier waves. Candidates that do not fit the cap stay
        candidates for the next wave.
        """
        graph = self.graph
        planned: Set[int] = set()
        units: List[DispatchUnit] = []
        while len(planned) < len(graph):
            candidates = sorted(
                (
                    i for i in range(len(graph))
                    if i not in planned
                    and all(d in planned for d in graph.dependencies[i])
                ),
                key=self._key,
            )
            wave = candidates[: self.max_concurrent]
            planned.update(wave)
            units.append(DispatchUnit(
                index=len(units) + 1,
                run_names=tuple(graph.names[i] for i in wave),
            ))
        return units

    # ------------------------------------------------------------------
    # Dynamic queries
    # ------------------------------------------------------------------

    def ready_set(self, states: Mapping[str, RunState]) -> List[str]:
        """Pending or Ready runs whose dependencies all succeeded.

        Sorted by (priority, batch order).
        """
        graph = self.graph
        ready = [
            i for i, name in enumerate(graph.names)
            if states[name].status in _WAITING
            and all(
                states[graph.names[d]].status == RunStatus.SUCCEEDED
                for d in graph.dependencies[i]
            )
        ]
        ready.sort(key=self._key)
        return [graph.names[i] for i in ready]

    def blocked_runs(self, states: Mapping[str, RunState]) -> List[str]:
        """Pending or Ready runs with a Failed or Skipped dependency."""
        graph = self.graph
        return [
            name for i, name in enumerate(graph.names)
            if states[name].status in _WAITING
            and any(
                states[graph.names[d]].status in _BLOCKING
                for d in graph.dependencies[i]
            )
        ]

    def next_unit(
        self, states: Mapping[str, RunState], index: int
    ) -> Optional[DispatchUnit]:
        """The unit to dispatch now, or None when nothing is ready.

        Sequential mode picks the first run of the static order that is
        ready. Parallel mode takes up to ``max_concurrent_runs`` of the
        ready set; the rest wait for a later wave.
        """
        ready = self.ready_set(states)
        if not ready:
            return None
        if self.mode == ExecutionMode.SEQUENTIAL:
            ready_names = set(ready)
            for name in self.plan().order:
                if name in ready_names:
                    return DispatchUnit(index=index, run_names=(name,))
            return None
        return DispatchUnit(index=index, run_names=tuple(ready[: self.max_concurrent]))
