"""Deterministic dry-run backend.

Each run follows a script of attempt outcomes keyed by run name::

    SimulatedBackend(outcomes={
        "Smoke": ["fail", "pass"],        # fails once, then passes
        "Regression": ["transient", "pass"],
        "Broken": ["fatal"],
    })

Script entries are ``pass``, ``fail`` (tests ran and failed), ``transient``
or ``fatal`` (the attempt could not run). The last entry repeats once the
script is exhausted; runs without a script pass.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from testrunmcp.domains.batch_execution.entities import RunSpec
from testrunmcp.domains.batch_execution.errors import (
    FatalExecutionError,
    TransientExecutionError,
)
from testrunmcp.domains.batch_execution.services import ExecutionOutcome, RunContext
from testrunmcp.utils.formatting import generate_test_run_id

logger = logging.getLogger(__name__)

OUTCOMES = ("pass", "fail", "transient", "fatal")


def _normalize_script(script: Union[str, bool, Sequence[Any]]) -> List[str]:
    items = [script] if isinstance(script, (str, bool)) else list(script)
    normalized: List[str] = []
    for item in items:
        if isinstance(item, bool):
            item = "pass" if item else "fail"
        value = str(item).strip().lower()
        if value not in OUTCOMES:
            raise ValueError(f"Unknown simulated outcome {item!r}; expected one of {OUTCOMES}")
        normalized.append(value)
    return normalized


class SimulatedBackend:
    """Scripted ``ExecutionBackend`` used for dry runs and tests.

    Attributes:
        calls: (run_name, attempt) of every attempt, in call order
    """

    def __init__(
        self,
        outcomes: Optional[Mapping[str, Union[str, bool, Sequence[Any]]]] = None,
        latency: float = 0.0,
        latencies: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.outcomes: Dict[str, List[str]] = {
            name: _normalize_script(script) for name, script in (outcomes or {}).items()
        }
        self.latency = latency
        self.latencies = dict(latencies or {})
        self.calls: List[tuple] = []
        self._attempts: Dict[str, int] = defaultdict(int)

    def _next_outcome(self, run_name: str) -> str:
        script = self.outcomes.get(run_name)
        index = self._attempts[run_name]
        self._attempts[run_name] += 1
        if not script:
            return "pass"
        return script[min(index, len(script) - 1)]

    async def execute(self, run: RunSpec, context: RunContext) -> ExecutionOutcome:
        self.calls.append((run.run_name, context.attempt))
        delay = self.latencies.get(run.run_name, self.latency)
        if delay > 0:
            await asyncio.sleep(delay)

        outcome = self._next_outcome(run.run_name)
        logger.debug("Simulated %s attempt %d: %s", run.run_name, context.attempt, outcome)
        if outcome == "transient":
            raise TransientExecutionError(f"Simulated transient error for '{run.run_name}'")
        if outcome == "fatal":
            raise FatalExecutionError(f"Simulated fatal error for '{run.run_name}'")

        detail: Dict[str, Any] = {
            "test_run_id": generate_test_run_id("sim"),
            "simulated": True,
        }
        if outcome == "fail":
            detail["error"] = f"Simulated test failures in '{run.run_name}'"
            return ExecutionOutcome(succeeded=False, detail=detail)
        return ExecutionOutcome(succeeded=True, detail=detail)
