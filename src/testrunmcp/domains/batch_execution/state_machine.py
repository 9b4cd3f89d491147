"""Run lifecycle state machine.

::

    Pending ──> Ready ──> Running ──> Succeeded
       │          │        │  ▲
       │          │        │  └── Retrying <─┐
       │          │        ├──────────────────┘
       │          │        └──> Failed
       │          │             (Retrying -> Failed on cancel)
       └──────────┴──> Skipped

Every transition goes through ``RunStateMachine.transition`` which checks
the table below and stamps timestamps. Terminal statuses have no exits.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .entities import RunState
from .errors import InvalidTransitionError
from .value_objects import RunStatus, SkipReason

logger = logging.getLogger(__name__)

TRANSITIONS: Mapping[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.READY, RunStatus.SKIPPED}),
    RunStatus.READY: frozenset({RunStatus.RUNNING, RunStatus.SKIPPED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.SUCCEEDED, RunStatus.RETRYING, RunStatus.FAILED}
    ),
    RunStatus.RETRYING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.SKIPPED: frozenset(),
}


class RunStateMachine:
    """Applies lifecycle transitions to ``RunState`` records.

    Stateless: the coordinator owns the records and calls in here for every
    status change, so the table is the single place that decides legality.
    """

    transitions: Mapping[RunStatus, FrozenSet[RunStatus]] = TRANSITIONS

    def can_transition(self, state: RunState, target: RunStatus) -> bool:
        return target in self.transitions[state.status]

    def transition(self, state: RunState, target: RunStatus) -> RunState:
        """Move *state* to *target*.

        Raises:
            InvalidTransitionError: If the table forbids the move
        """
        if not self.can_transition(state, target):
            raise InvalidTransitionError(state.run_name, state.status, target)
        previous = state.status
        state.status = target
        if target.is_terminal:
            state.completed_at = datetime.now()
            state.retry_at = None
        logger.debug("Run %s: %s -> %s", state.run_name, previous.value, target.value)
        return state

    # ------------------------------------------------------------------
    # Named transitions
    # ------------------------------------------------------------------

    def mark_ready(self, state: RunState) -> RunState:
        """Pending -> Ready once every dependency succeeded."""
        if state.status == RunStatus.READY:
            return state
        return self.transition(state, RunStatus.READY)

    def skip(self, state: RunState, reason: SkipReason) -> RunState:
        """Pending/Ready -> Skipped."""
        self.transition(state, RunStatus.SKIPPED)
        state.skip_reason = reason
        return state

    def start(self, state: RunState, dispatch_index: Optional[int] = None) -> RunState:
        """Ready -> Running for a first dispatch, Retrying -> Running for a retry.

        A retry increments ``attempt``.
        """
        retrying = state.status == RunStatus.RETRYING
        self.transition(state, RunStatus.RUNNING)
        if retrying:
            state.attempt += 1
            state.retry_at = None
        else:
            state.started_at = datetime.now()
            if dispatch_index is not None:
                state.dispatch_index = dispatch_index
        return state

    def succeed(self, state: RunState, detail: Optional[Dict[str, Any]] = None) -> RunState:
        """Running -> Succeeded."""
        self.transition(state, RunStatus.SUCCEEDED)
        state.detail = dict(detail or {})
        return state

    def fail_attempt(
        self,
        state: RunState,
        error: str,
        *,
        can_retry: bool,
        retry_at: Optional[float] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> RunStatus:
        """Running -> Retrying when the budget allows, else Running -> Failed.

        Returns:
            The status the run ended up in
        """
        state.last_error = error
        state.detail = dict(detail or {})
        if can_retry:
            self.transition(state, RunStatus.RETRYING)
            state.retry_at = retry_at
        else:
            self.transition(state, RunStatus.FAILED)
        return state.status

    def cancel(self, state: RunState, error: str) -> RunState:
        """Running/Retrying -> Failed when the batch itself is cancelled."""
        self.transition(state, RunStatus.FAILED)
        state.last_error = error
        return state
