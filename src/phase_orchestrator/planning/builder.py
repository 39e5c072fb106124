"""
phase-orchestrator — task graph builder.

Purpose
- Decompose a goal descriptor into a phase-assigned task DAG inside a fresh
  ``WorkflowRun``.

Functional requirements
- One task per required capability, enumerated in goal order.
- Phase of a task: the goal's phase override, else the capability's default.
- Dependency hints are ``(prerequisite, dependent)`` capability pairs; they
  must be acyclic and never point from an earlier phase to a later one.
- All structural errors raise before any worker can be dispatched.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from phase_orchestrator.capabilities.registry import CapabilityRegistry
from phase_orchestrator.constants import (
    CANONICAL_PHASES,
    DEFAULT_GATE_THRESHOLDS,
    DEFAULT_RETRY_BUDGET,
)
from phase_orchestrator.domain import ids
from phase_orchestrator.domain.errors import (
    GoalValidationError,
    GraphCycleError,
    PhaseOrderError,
    UnknownCapabilityError,
)
from phase_orchestrator.domain.models import (
    GoalDescriptor,
    Severity,
    Task,
    WorkflowRun,
    parse_threshold,
)
from phase_orchestrator.planning.task_graph import TaskGraph


class TaskGraphBuilder:
    """Builds validated ``WorkflowRun`` aggregates from goal descriptors."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        phases: Sequence[str] = CANONICAL_PHASES,
        gate_thresholds: Mapping[str, object] | None = None,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._phases = tuple(phases)
        self._retry_budget = retry_budget
        raw_thresholds = DEFAULT_GATE_THRESHOLDS if gate_thresholds is None else gate_thresholds
        self._thresholds: dict[str, Severity | None] = {
            phase: parse_threshold(value, f"gate_thresholds.{phase}")
            for phase, value in raw_thresholds.items()
        }
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build(self, goal: GoalDescriptor, *, run_id: str | None = None) -> WorkflowRun:
        phases = goal.phases or self._phases
        if not phases:
            raise GoalValidationError("goal resolves to an empty phase list")
        required = goal.required_capabilities
        self._validate_shape(goal, phases)

        for capability in required:
            if capability not in self._registry:
                raise UnknownCapabilityError(capability)

        phase_by_capability: dict[str, str] = {}
        for capability in required:
            phase = goal.phase_overrides.get(capability) or self._registry.resolve(capability).phase
            if phase not in phases:
                raise GoalValidationError(
                    f"capability {capability!r} is assigned to unknown phase {phase!r}; "
                    f"expected one of {list(phases)}"
                )
            phase_by_capability[capability] = phase

        width = max(2, len(str(len(required))))
        task_ids = {
            capability: ids.task_id(index, capability, width=width)
            for index, capability in enumerate(required, start=1)
        }

        graph = TaskGraph()
        for index, capability in enumerate(required, start=1):
            graph.add_node(task_ids[capability], order=index)

        for prerequisite, dependent in goal.dependency_hints:
            for capability in (prerequisite, dependent):
                if capability not in phase_by_capability:
                    reason = (
                        "not registered"
                        if capability not in self._registry
                        else "not required by goal"
                    )
                    raise UnknownCapabilityError(capability, reason=f"dependency hint: {reason}")
            if prerequisite == dependent:
                raise GraphCycleError([(prerequisite, prerequisite)])
            if phases.index(phase_by_capability[prerequisite]) > phases.index(
                phase_by_capability[dependent]
            ):
                raise PhaseOrderError(
                    prerequisite,
                    dependent,
                    detail=(
                        f"phase {phase_by_capability[prerequisite]!r} runs after "
                        f"{phase_by_capability[dependent]!r}"
                    ),
                )
            graph.add_edge(task_ids[prerequisite], task_ids[dependent])

        try:
            graph.topological_sort()
        except GraphCycleError as exc:
            capability_of = {task_id: capability for capability, task_id in task_ids.items()}
            raise GraphCycleError(
                tuple(capability_of[node] for node in cycle) for cycle in exc.cycles
            ) from None

        tasks = [
            Task(
                id=task_ids[capability],
                capability=capability,
                phase=phase_by_capability[capability],
                sequence=index,
                dependencies=graph.get_dependencies(task_ids[capability]),
            )
            for index, capability in enumerate(required, start=1)
        ]

        budget = self._resolve_budget(goal)
        thresholds = {phase: self._thresholds.get(phase) for phase in phases}
        thresholds.update(goal.gate_thresholds)

        run = WorkflowRun(
            id=run_id or ids.generate_run_id(),
            goal=goal,
            phases=phases,
            gate_thresholds=thresholds,
            tasks=tasks,
            retry_budget_initial=budget,
            retry_budget_remaining=budget,
        )
        run.record_audit(
            "run_planned",
            run.id,
            detail={
                "goal": goal.name,
                "tasks": [task.id for task in tasks],
                "retry_budget": budget,
            },
        )
        self._logger.info(
            "task_graph_built",
            run_id=run.id,
            goal=goal.name,
            task_count=len(tasks),
            edge_count=len(graph.edges),
            phases=list(phases),
        )
        return run

    def _resolve_budget(self, goal: GoalDescriptor) -> int:
        return self._retry_budget if goal.retry_budget is None else goal.retry_budget

    def _validate_shape(self, goal: GoalDescriptor, phases: tuple[str, ...]) -> None:
        required = goal.required_capabilities
        if not required:
            raise GoalValidationError("goal must require at least one capability")
        seen: set[str] = set()
        for capability in required:
            if capability in seen:
                raise GoalValidationError(f"capability {capability!r} is required more than once")
            seen.add(capability)
        budget = self._resolve_budget(goal)
        if budget < 0:
            raise GoalValidationError(f"retry_budget must be >= 0 (got {budget})")
        for capability in goal.phase_overrides:
            if capability not in seen:
                raise UnknownCapabilityError(
                    capability, reason="phase override: not required by goal"
                )
        for phase in goal.gate_thresholds:
            if phase not in phases:
                raise GoalValidationError(f"gate threshold configured for unknown phase {phase!r}")


__all__ = ["TaskGraphBuilder"]
