"""Batch Execution Domain Errors.

Two families:

- **Validation issues**: frozen dataclasses describing one problem with a
  submitted batch. They are collected, never raised one by one, and wrapped
  in a single ``BatchValidationError`` so a caller sees every problem at once.
- **Exceptions**: ``ExecutionError`` (one backend attempt went wrong) and
  ``InvalidTransitionError`` (a run state machine misuse).

Every issue and error carries a stable machine-readable ``ErrorCode``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple


class ErrorCode(str, Enum):
    """Stable error codes reported by tools and domain services."""
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_FIELD_VALUE = "INVALID_FIELD_VALUE"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    OPERATION_FAILED = "OPERATION_FAILED"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    DEPENDENCY_VIOLATION = "DEPENDENCY_VIOLATION"
    DUPLICATE_RUN_NAME = "DUPLICATE_RUN_NAME"
    INVALID_NUMERIC_RANGE = "INVALID_NUMERIC_RANGE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    BATCH_TIMEOUT = "BATCH_TIMEOUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    VALIDATION_FAILED = "VALIDATION_FAILED"


# ── Validation issues ────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    """Base class for a single batch validation problem."""
    code: ClassVar[ErrorCode] = ErrorCode.INVALID_INPUT

    @property
    def run_names(self) -> Tuple[str, ...]:
        return ()

    @property
    def message(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "type": type(self).__name__,
            "run_names": list(self.run_names),
            "message": self.message,
        }


@dataclass(frozen=True)
class DuplicateRunName(ValidationIssue):
    code: ClassVar[ErrorCode] = ErrorCode.DUPLICATE_RUN_NAME

    run_name: str
    occurrences: int = 2

    @property
    def run_names(self) -> Tuple[str, ...]:
        return (self.run_name,)

    @property
    def message(self) -> str:
        return (
            f"Run name '{self.run_name}' is used {self.occurrences} times; "
            f"run names must be unique within a batch"
        )


@dataclass(frozen=True)
class UnknownDependency(ValidationIssue):
    code: ClassVar[ErrorCode] = ErrorCode.DEPENDENCY_VIOLATION

    run_name: str
    missing_name: str

    @property
    def run_names(self) -> Tuple[str, ...]:
        return (self.run_name,)

    @property
    def message(self) -> str:
        return (
            f"Run '{self.run_name}' depends on '{self.missing_name}' "
            f"which is not in the batch"
        )

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["missing_name"] = self.missing_name
        return d


@dataclass(frozen=True)
class CyclicDependency(ValidationIssue):
    """A dependency cycle; ``cycle_path`` starts and ends with the same run."""
    code: ClassVar[ErrorCode] = ErrorCode.CIRCULAR_DEPENDENCY

    cycle_path: Tuple[str, ...]

    @property
    def run_names(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(self.cycle_path))

    @property
    def message(self) -> str:
        return "Circular dependency detected: " + " -> ".join(self.cycle_path)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["cycle_path"] = list(self.cycle_path)
        return d


@dataclass(frozen=True)
class InvalidNumericRange(ValidationIssue):
    code: ClassVar[ErrorCode] = ErrorCode.INVALID_NUMERIC_RANGE

    field_name: str
    value: Any
    constraint: str
    run_name: Optional[str] = None

    @property
    def run_names(self) -> Tuple[str, ...]:
        return (self.run_name,) if self.run_name else ()

    @property
    def message(self) -> str:
        owner = f"Run '{self.run_name}': " if self.run_name else ""
        return f"{owner}{self.field_name} must be {self.constraint}, got {self.value!r}"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field_name
        d["value"] = self.value
        return d


@dataclass(frozen=True)
class MissingRequiredField(ValidationIssue):
    code: ClassVar[ErrorCode] = ErrorCode.MISSING_REQUIRED_FIELD

    field_name: str
    run_index: Optional[int] = None

    @property
    def message(self) -> str:
        if self.run_index is not None:
            return f"runs[{self.run_index}].{self.field_name} is required"
        return f"{self.field_name} is required"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field_name
        if self.run_index is not None:
            d["run_index"] = self.run_index
        return d


@dataclass(frozen=True)
class InvalidFieldValue(ValidationIssue):
    code: ClassVar[ErrorCode] = ErrorCode.INVALID_FIELD_VALUE

    field_name: str
    value: Any
    expected: str
    run_name: Optional[str] = None

    @property
    def run_names(self) -> Tuple[str, ...]:
        return (self.run_name,) if self.run_name else ()

    @property
    def message(self) -> str:
        owner = f"Run '{self.run_name}': " if self.run_name else ""
        return f"{owner}{self.field_name} must be {self.expected}, got {self.value!r}"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field_name
        d["value"] = self.value
        return d


class BatchValidationError(Exception):
    """Raised when a batch is rejected; carries every issue found."""

    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, issues: Sequence[ValidationIssue]) -> None:
        self.issues: List[ValidationIssue] = list(issues)
        summary = "; ".join(i.message for i in self.issues[:3])
        if len(self.issues) > 3:
            summary += f" (+{len(self.issues) - 3} more)"
        super().__init__(f"Batch rejected with {len(self.issues)} issue(s): {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.code.value,
            "error": str(self),
            "errors": [i.to_dict() for i in self.issues],
        }


# ── Execution errors ─────────────────────────────────────────────────


class ExecutionError(Exception):
    """A backend attempt could not produce an outcome.

    ``retryable`` is the explicit contract between a backend and the
    coordinator: it decides whether the attempt counts against the retry
    budget or fails the run immediately.
    """

    retryable: bool = False
    code = ErrorCode.EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code.value,
            "error": str(self),
            "retryable": self.retryable,
        }
        if self.details:
            d["details"] = self.details
        return d


class TransientExecutionError(ExecutionError):
    """Temporary failure (network, throttling, 5xx); counts as a retry."""
    retryable = True


class FatalExecutionError(ExecutionError):
    """Permanent failure (bad input, missing resources); never retried."""
    retryable = False


class InvalidTransitionError(Exception):
    """A run was asked to move to a status its current status forbids."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, run_name: str, current: Any, target: Any) -> None:
        self.run_name = run_name
        self.current = current
        self.target = target
        super().__init__(
            f"Run '{run_name}' cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )

