"""
Domain types shared across planes: Task, Finding, Gate, WorkflowRun, Deliverable.

The domain layer is free of IO side effects; every model serializes to canonical JSON.
"""

from phase_orchestrator.domain.errors import (
    CapabilityNotFoundError,
    DuplicateCapabilityError,
    GoalValidationError,
    GraphCycleError,
    OrchestratorError,
    PhaseOrderError,
    RetryBudgetExhausted,
    RunAborted,
    TaskTimeout,
    UnknownCapabilityError,
    UnrecoverableTaskFailure,
    WorkerInvocationError,
    WorkflowFailed,
)
from phase_orchestrator.domain.events import EventType, WorkflowEvent
from phase_orchestrator.domain.models import (
    AuditEntry,
    Deliverable,
    Finding,
    FindingReport,
    Gate,
    GateVerdict,
    GoalDescriptor,
    IdempotencyClass,
    RunStatus,
    Severity,
    Task,
    TaskResult,
    TaskStatus,
    WorkerStatus,
    WorkflowRun,
)

__all__ = [
    "AuditEntry",
    "CapabilityNotFoundError",
    "Deliverable",
    "DuplicateCapabilityError",
    "EventType",
    "Finding",
    "FindingReport",
    "Gate",
    "GateVerdict",
    "GoalDescriptor",
    "GoalValidationError",
    "GraphCycleError",
    "IdempotencyClass",
    "OrchestratorError",
    "PhaseOrderError",
    "RetryBudgetExhausted",
    "RunAborted",
    "RunStatus",
    "Severity",
    "Task",
    "TaskResult",
    "TaskStatus",
    "TaskTimeout",
    "UnknownCapabilityError",
    "UnrecoverableTaskFailure",
    "WorkerInvocationError",
    "WorkerStatus",
    "WorkflowEvent",
    "WorkflowFailed",
    "WorkflowRun",
]
