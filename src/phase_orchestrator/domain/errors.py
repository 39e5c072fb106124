"""Error taxonomy shared by the builder, registry, scheduler, and retry controller."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from phase_orchestrator.domain.models import Finding


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration core."""

    kind: str = "OrchestratorError"


class GoalValidationError(OrchestratorError, ValueError):
    """Raised when a goal descriptor is structurally invalid."""

    kind = "GoalValidationError"


class GraphCycleError(GoalValidationError):
    """Raised when dependency hints would produce a cyclic task graph."""

    kind = "GraphCycleError"
    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Task graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Task graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class PhaseOrderError(GoalValidationError):
    """Raised when a task would depend on a task of a later phase."""

    kind = "PhaseOrderError"

    def __init__(self, prerequisite: str, dependent: str, *, detail: str) -> None:
        self.prerequisite = prerequisite
        self.dependent = dependent
        super().__init__(
            f"{dependent!r} cannot depend on {prerequisite!r}: {detail}"
        )


class UnknownCapabilityError(GoalValidationError, LookupError):
    """Raised when a goal references a capability the engine cannot route."""

    kind = "UnknownCapabilityError"

    def __init__(self, capability: str, *, reason: str = "not registered") -> None:
        self.capability = capability
        super().__init__(f"unknown capability {capability!r}: {reason}")


class DuplicateCapabilityError(OrchestratorError, ValueError):
    """Raised when a capability name is registered twice."""

    kind = "DuplicateCapabilityError"

    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(f"capability already registered: {capability!r}")


class CapabilityNotFoundError(OrchestratorError, KeyError):
    """Raised by registry lookups for an absent capability."""

    kind = "CapabilityNotFoundError"

    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(capability)

    def __str__(self) -> str:
        return f"capability not found: {self.capability!r}"


class TaskTimeout(OrchestratorError, TimeoutError):
    """A worker invocation exceeded its capability timeout."""

    kind = "TaskTimeout"

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"task {task_id} timed out after {timeout_seconds} seconds")


class WorkerInvocationError(OrchestratorError, RuntimeError):
    """A worker raised an unexpected fault or returned a malformed result."""

    kind = "WorkerInvocationError"

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id}: {message}")


class WorkflowFailed(OrchestratorError):
    """Base for terminal run outcomes surfaced by ``Deliverable.raise_for_status``."""

    kind = "WorkflowFailed"

    def __init__(self, message: str, *, unresolved_findings: Sequence[Finding] = ()) -> None:
        self.unresolved_findings: tuple[Finding, ...] = tuple(unresolved_findings)
        super().__init__(message)


class RetryBudgetExhausted(WorkflowFailed):
    """A gate still failed after the retry budget reached zero."""

    kind = "RetryBudgetExhausted"


class UnrecoverableTaskFailure(WorkflowFailed):
    """A non-retriable task failed, leaving no remediation path."""

    kind = "UnrecoverableTaskFailure"


class RunAborted(WorkflowFailed):
    """The run was cancelled before reaching its final phase."""

    kind = "RunAborted"


__all__ = [
    "CapabilityNotFoundError",
    "DuplicateCapabilityError",
    "GoalValidationError",
    "GraphCycleError",
    "OrchestratorError",
    "PhaseOrderError",
    "RetryBudgetExhausted",
    "RunAborted",
    "TaskTimeout",
    "UnknownCapabilityError",
    "UnrecoverableTaskFailure",
    "WorkerInvocationError",
    "WorkflowFailed",
]
