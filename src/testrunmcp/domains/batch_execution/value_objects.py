"""Batch Execution Domain Value Objects.

Immutable types that carry no identity. Equality is structural.
Enums are ``str`` subclasses so they serialize directly into MCP responses.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet


class RunStatus(str, Enum):
    """Lifecycle status of a single test run inside a batch.

    Values:
        PENDING: Waiting for dependencies to finish
        READY: All dependencies succeeded, waiting for a dispatch slot
        RUNNING: Dispatched to the execution backend
        RETRYING: Last attempt failed, waiting for its retry delay
        SUCCEEDED: Backend reported success
        FAILED: Backend reported failure and the retry budget is exhausted
        SKIPPED: Never dispatched (dependency failure, abort or timeout)
    """
    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    RETRYING = "Retrying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        """Dispatched and not finished (running or waiting to retry)."""
        return self in (RunStatus.RUNNING, RunStatus.RETRYING)


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED}
)


class OverallStatus(str, Enum):
    """Aggregated outcome of a finished batch.

    Values:
        SUCCEEDED: Every run succeeded
        PARTIALLY_SUCCEEDED: Some runs succeeded and some failed or were
            skipped, with ``continue_on_failure`` enabled
        FAILED: Anything else
    """
    SUCCEEDED = "Succeeded"
    PARTIALLY_SUCCEEDED = "PartiallySucceeded"
    FAILED = "Failed"


class ExecutionMode(str, Enum):
    """How the runs of a batch are dispatched.

    Values:
        SEQUENTIAL: One run at a time in topological order
        PARALLEL: Waves of up to ``max_concurrent_runs`` runs
    """
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"

    @classmethod
    def parse(cls, value: object) -> "ExecutionMode":
        """Parse a case-insensitive mode name.

        Raises:
            ValueError: If the value is not a known mode
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(value.strip().lower())
        raise ValueError(f"Unknown execution mode: {value!r}")


class SkipReason(str, Enum):
    """Why a run ended in SKIPPED without being dispatched."""
    DEPENDENCY_FAILED = "DependencyFailed"
    BATCH_ABORTED = "BatchAborted"
    BATCH_TIMEOUT = "BatchTimeout"


@dataclass(frozen=True)
class BatchId:
    """Unique identifier for a submitted batch.

    Format: ``batch_<12 hex chars>`` (e.g., ``batch_a1b2c3d4e5f6``).

    Invariants:
        - value must not be empty

    Examples:
        >>> bid = BatchId.generate()
        >>> bid = BatchId(value="batch_abc123def456")
    """
    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("BatchId cannot be empty")

    @classmethod
    def generate(cls) -> BatchId:
        """Generate a new unique BatchId."""
        return cls(value=f"batch_{uuid.uuid4().hex[:12]}")

    def __str__(self) -> str:
        return self.value
