"""Batch Execution Bounded Context.

Validates a batch of inter-dependent test runs, plans its dispatch order
(sequential or capped parallel waves), drives every run through a
retry-aware state machine and aggregates the batch outcome.
"""
from .value_objects import (
    BatchId,
    ExecutionMode,
    OverallStatus,
    RunStatus,
    SkipReason,
)
from .errors import (
    BatchValidationError,
    CyclicDependency,
    DuplicateRunName,
    ErrorCode,
    ExecutionError,
    FatalExecutionError,
    InvalidFieldValue,
    InvalidNumericRange,
    InvalidTransitionError,
    MissingRequiredField,
    TransientExecutionError,
    UnknownDependency,
    ValidationIssue,
)
from .entities import (
    RunSpec,
    RunState,
)
from .aggregates import (
    BatchExecution,
    BatchResult,
    BatchSpec,
)
from .graph import (
    DependencyGraph,
    DependencyGraphBuilder,
    GraphValidation,
)
from .retry import RetryPolicy
from .state_machine import RunStateMachine
from .planner import (
    DispatchUnit,
    ExecutionPlan,
    ExecutionPlanner,
)
from .validation import (
    BatchValidator,
    ValidationReport,
)
from .events import (
    BatchAborted,
    BatchCompleted,
    BatchStarted,
    BatchTimedOut,
    RunCompleted,
    RunDispatched,
    RunRetryScheduled,
    RunSkipped,
)
from .services import (
    BatchCoordinator,
    BatchRegistry,
    ExecutionBackend,
    ExecutionOutcome,
    RunContext,
)

__all__ = [
    # Value objects
    "BatchId",
    "ExecutionMode",
    "OverallStatus",
    "RunStatus",
    "SkipReason",
    # Errors
    "BatchValidationError",
    "CyclicDependency",
    "DuplicateRunName",
    "ErrorCode",
    "ExecutionError",
    "FatalExecutionError",
    "InvalidFieldValue",
    "InvalidNumericRange",
    "InvalidTransitionError",
    "MissingRequiredField",
    "TransientExecutionError",
    "UnknownDependency",
    "ValidationIssue",
    # Entities
    "RunSpec",
    "RunState",
    # Aggregates
    "BatchExecution",
    "BatchResult",
    "BatchSpec",
    # Graph
    "DependencyGraph",
    "DependencyGraphBuilder",
    "GraphValidation",
    # Services
    "BatchCoordinator",
    "BatchRegistry",
    "BatchValidator",
    "ExecutionPlanner",
    "RetryPolicy",
    "RunStateMachine",
    "ValidationReport",
    # Plans
    "DispatchUnit",
    "ExecutionPlan",
    # Backend protocol
    "ExecutionBackend",
    "ExecutionOutcome",
    "RunContext",
    # Events
    "BatchAborted",
    "BatchCompleted",
    "BatchStarted",
    "BatchTimedOut",
    "RunCompleted",
    "RunDispatched",
    "RunRetryScheduled",
    "RunSkipped",
]
