"""Shared Kernel - Tool parameter types shared across the server and CLI.

Literal type aliases with BeforeValidator for case-insensitive
normalization. They produce a flat {"enum": [...]} in JSON Schema while
accepting wrong-case input at runtime.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal

from pydantic import BeforeValidator


def _normalize_str(v: Any) -> Any:
    """Normalize string input: strip whitespace, lowercase."""
    return v.strip().lower() if isinstance(v, str) else v


ExecutionModeLiteral = Annotated[
    Literal["sequential", "parallel"],
    BeforeValidator(_normalize_str),
]

# Azure DevOps test outcomes keep their CamelCase spelling
TEST_OUTCOMES = (
    "Passed", "Failed", "Blocked", "NotExecuted", "Warning",
    "Error", "NotApplicable", "Paused", "InProgress", "NotImpacted",
)
_OUTCOME_BY_KEY = {outcome.lower(): outcome for outcome in TEST_OUTCOMES}


def _normalize_outcome(v: Any) -> Any:
    """Map any casing of a known outcome to its canonical spelling."""
    if not isinstance(v, str):
        return v
    return _OUTCOME_BY_KEY.get(v.strip().lower(), v)


TestOutcomeLiteral = Annotated[
    Literal[
        "Passed", "Failed", "Blocked", "NotExecuted", "Warning",
        "Error", "NotApplicable", "Paused", "InProgress", "NotImpacted",
    ],
    BeforeValidator(_normalize_outcome),
]


# ── Structured argument coercion ──────────────────────────────


def _coerce_string_to_runs(v: Any) -> Any:
    """Coerce a stringified JSON array (or single object) of run definitions.

    Some clients send structured arguments as JSON text:
    1. '[{"runName": "A"}, {"runName": "B"}]' -> list of dicts
    2. '{"runName": "A"}'                     -> [{"runName": "A"}]

    Non-string inputs pass through unchanged; text that does not parse is
    left for schema validation to reject.
    """
    if not isinstance(v, str):
        return v
    v_stripped = v.strip()
    if not v_stripped:
        return v
    try:
        parsed = json.loads(v_stripped)
    except json.JSONDecodeError:
        return v
    if isinstance(parsed, dict):
        return [parsed]
    return parsed


RunDefinitions = Annotated[
    List[Dict[str, Any]],
    BeforeValidator(_coerce_string_to_runs),
]
