"""Formatting helpers shared by tool responses and the CLI."""

from __future__ import annotations

import time
import uuid


def format_execution_duration(duration_ms: int) -> str:
    """Format a duration for display.

    Examples:
        >>> format_execution_duration(850)
        '850ms'
        >>> format_execution_duration(185000)
        '3m 5s'
        >>> format_execution_duration(7260000)
        '2h 1m'
    """
    duration_ms = max(0, int(duration_ms))
    if duration_ms < 1000:
        return f"{duration_ms}ms"

    seconds = duration_ms // 1000
    if seconds < 60:
        return f"{seconds}s"

    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s" if remaining_seconds else f"{minutes}m"

    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours}h {remaining_minutes}m" if remaining_minutes else f"{hours}h"


def generate_test_run_id(prefix: str = "run") -> str:
    """Generate a unique, roughly time-ordered test run identifier."""
    timestamp = int(time.time() * 1000)
    return f"{prefix}_{timestamp}_{uuid.uuid4().hex[:6]}"
