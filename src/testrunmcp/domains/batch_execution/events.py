"""Batch Execution Domain Events.

Events emitted by the batch coordinator for observability. Delivered to an
optional publisher callback; every event serializes with an ``event_type``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .errors import ErrorCode


@dataclass(frozen=True)
class BatchStarted:
    """Emitted when the first unit of a batch is about to be dispatched."""
    batch_id: str
    batch_name: str
    run_count: int
    execution_mode: str
    max_concurrent_runs: int
    continue_on_failure: bool
    global_timeout: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "batch_started",
            "batch_id": self.batch_id,
            "batch_name": self.batch_name,
            "run_count": self.run_count,
            "execution_mode": self.execution_mode,
            "max_concurrent_runs": self.max_concurrent_runs,
            "continue_on_failure": self.continue_on_failure,
            "global_timeout": self.global_timeout,
        }


@dataclass(frozen=True)
class RunDispatched:
    """Emitted for every attempt handed to the backend."""
    batch_id: str
    run_name: str
    attempt: int
    dispatch_index: Optional[int]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "run_dispatched",
            "batch_id": self.batch_id,
            "run_name": self.run_name,
            "attempt": self.attempt,
            "dispatch_index": self.dispatch_index,
        }


@dataclass(frozen=True)
class RunRetryScheduled:
    """Emitted when a failed attempt is queued for a retry."""
    batch_id: str
    run_name: str
    failed_attempt: int
    delay_seconds: float
    error: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "run_retry_scheduled",
            "batch_id": self.batch_id,
            "run_name": self.run_name,
            "failed_attempt": self.failed_attempt,
            "delay_seconds": self.delay_seconds,
            "error": self.error,
        }


@dataclass(frozen=True)
class RunCompleted:
    """Emitted when a dispatched run reaches Succeeded or Failed."""
    batch_id: str
    run_name: str
    status: str
    attempts: int
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "event_type": "run_completed",
            "batch_id": self.batch_id,
            "run_name": self.run_name,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class RunSkipped:
    """Emitted when a run is skipped without being dispatched."""
    batch_id: str
    run_name: str
    reason: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "run_skipped",
            "batch_id": self.batch_id,
            "run_name": self.run_name,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class BatchAborted:
    """Emitted when a failure stops further dispatch."""
    batch_id: str
    failed_run: str
    skipped_runs: Tuple[str, ...]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "batch_aborted",
            "batch_id": self.batch_id,
            "failed_run": self.failed_run,
            "skipped_runs": list(self.skipped_runs),
        }


@dataclass(frozen=True)
class BatchTimedOut:
    """Emitted when the global timeout is exceeded."""
    batch_id: str
    elapsed_ms: int
    timeout_ms: int
    skipped_runs: Tuple[str, ...]
    code: str = ErrorCode.BATCH_TIMEOUT.value
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "batch_timed_out",
            "batch_id": self.batch_id,
            "code": self.code,
            "elapsed_ms": self.elapsed_ms,
            "timeout_ms": self.timeout_ms,
            "skipped_runs": list(self.skipped_runs),
        }


@dataclass(frozen=True)
class BatchCompleted:
    """Emitted once every run is terminal and the outcome is known."""
    batch_id: str
    overall_status: str
    succeeded: int
    failed: int
    skipped: int
    total_time_ms: int
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "batch_completed",
            "batch_id": self.batch_id,
            "overall_status": self.overall_status,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_time_ms": self.total_time_ms,
        }
