"""Retry budget resolution.

Per-run overrides win over batch defaults; both fall back to zero.
"""
from __future__ import annotations

from .aggregates import BatchSpec
from .entities import RunSpec


class RetryPolicy:
    """Pure functions resolving the effective retry settings of a run.

    The delay is scheduling information for the coordinator's retry queue,
    never a sleep performed here.
    """

    @staticmethod
    def effective_max_retries(run: RunSpec, batch: BatchSpec) -> int:
        if run.max_retries is not None:
            return int(run.max_retries)
        if batch.default_max_retries is not None:
            return int(batch.default_max_retries)
        return 0

    @staticmethod
    def effective_retry_delay(run: RunSpec, batch: BatchSpec) -> float:
        if run.retry_delay is not None:
            return float(run.retry_delay)
        if batch.default_retry_delay is not None:
            return float(batch.default_retry_delay)
        return 0.0

    @classmethod
    def can_retry(cls, attempt: int, run: RunSpec, batch: BatchSpec) -> bool:
        """True while ``attempt`` leaves room for another one.

        A run gets ``effective_max_retries + 1`` attempts in total.
        """
        return attempt < cls.effective_max_retries(run, batch) + 1
