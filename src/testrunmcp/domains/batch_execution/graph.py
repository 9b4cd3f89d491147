"""Dependency graph of a batch.

Runs reference each other by name. The graph maps every name to a dense
node id (its position in the batch) and stores edges as id adjacency lists,
so there are no object references between nodes and cycle detection is a
plain array walk.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .entities import RunSpec
from .errors import (
    CyclicDependency,
    DuplicateRunName,
    UnknownDependency,
    ValidationIssue,
)

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class DependencyGraph:
    """Directed "must finish before" graph over the runs of one batch.

    Attributes:
        names: Node id -> run name (ids follow batch order)
        index: Run name -> node id
        dependencies: Node id -> ids of the runs it depends on
        dependents: Node id -> ids of the runs depending on it
    """
    names: Tuple[str, ...]
    index: Mapping[str, int]
    dependencies: Tuple[Tuple[int, ...], ...]
    dependents: Tuple[Tuple[int, ...], ...]

    def __len__(self) -> int:
        return len(self.names)


@dataclass(frozen=True)
class GraphValidation:
    """Outcome of ``DependencyGraphBuilder.validate``: a graph or issues."""
    graph: Optional[DependencyGraph] = None
    issues: Tuple[ValidationIssue, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return self.graph is not None and not self.issues


class DependencyGraphBuilder:
    """Validates run specifications and builds their dependency graph.

    Collects every duplicate name, unknown dependency and cycle instead of
    stopping at the first one. The issue order is deterministic: duplicates,
    then unknown dependencies, then cycles, each in batch order.
    """

    def validate(self, runs: Sequence[RunSpec]) -> GraphValidation:
        issues: List[ValidationIssue] = []

        names = tuple(run.run_name for run in runs)
        index: Dict[str, int] = {}
        for node_id, name in enumerate(names):
            index.setdefault(name, node_id)

        counts = Counter(name for name in names if name)
        for name in index:
            if counts.get(name, 0) > 1:
                issues.append(DuplicateRunName(run_name=name, occurrences=counts[name]))

        dependencies: List[Tuple[int, ...]] = []
        dependents: List[List[int]] = [[] for _ in names]
        for node_id, run in enumerate(runs):
            resolved: List[int] = []
            for dep in run.depends_on:
                dep_id = index.get(dep) if isinstance(dep, str) else None
                if dep_id is None:
                    issues.append(UnknownDependency(run_name=run.run_name, missing_name=str(dep)))
                    continue
                if dep_id not in resolved:
                    resolved.append(dep_id)
                    dependents[dep_id].append(node_id)
            dependencies.append(tuple(resolved))

        for cycle in self._find_cycles(names, dependencies):
            issues.append(CyclicDependency(cycle_path=cycle))

        if issues:
            logger.debug("Dependency validation found %d issue(s)", len(issues))
            return GraphValidation(graph=None, issues=tuple(issues))

        graph = DependencyGraph(
            names=names,
            index=index,
            dependencies=tuple(dependencies),
            dependents=tuple(tuple(d) for d in dependents),
        )
        return GraphValidation(graph=graph)

    @staticmethod
    def _find_cycles(
        names: Sequence[str], dependencies: Sequence[Sequence[int]]
    ) -> List[Tuple[str, ...]]:
        """Depth-first search with an active-path marker.

        Every edge into a node on the active path (grey) closes a cycle. The
        reported path follows "depends on" edges and repeats its first run
        at the end, e.g. ``("A", "B", "A")``.
        """
        color = [_WHITE] * len(names)
        cycles: List[Tuple[str, ...]] = []

        for root in range(len(names)):
            if color[root] != _WHITE:
                continue
            color[root] = _GREY
            path = [root]
            stack = [(root, iter(dependencies[root]))]
            while stack:
                node, edges = stack[-1]
                descended = False
                for nxt in edges:
                    if color[nxt] == _WHITE:
                        color[nxt] = _GREY
                        path.append(nxt)
                        stack.append((nxt, iter(dependencies[nxt])))
                        descended = True
                        break
                    if color[nxt] == _GREY:
                        start = path.index(nxt)
                        cycles.append(tuple(names[i] for i in path[start:]) + (names[nxt],))
                if not descended:
                    color[node] = _BLACK
                    path.pop()
                    stack.pop()
        return cycles
