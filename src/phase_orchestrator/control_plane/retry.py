"""
phase-orchestrator — retry/iteration controller.

Purpose
- Turn a failed phase gate into remediation work, within the run's bounded
  retry budget.

Functional requirements
- Budget exhausted: the run fails with ``retry_budget_exhausted``; the gate's
  blocking findings become the run's unresolved findings verbatim, and pending
  dependents of failed tasks are blocked.
- Otherwise exactly one budget unit is charged per cycle, then for every
  blocking finding's target task:
  - a failed target in the gate's phase is re-queued (``failed -> ready``);
  - a target still pending or ready is left to run as planned;
  - any other target gets a remediation task in the gate's phase carrying the
    findings in its payload, and is marked superseded.
- Each originating task that reported a finding against another task is
  re-verified by a new task of its capability that depends on the remediation
  work; the original is marked superseded so its findings stop counting.
- Pending tasks that depended on a superseded task are rewired to its
  replacement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from phase_orchestrator.control_plane.budgets import RetryBudgetLedger
from phase_orchestrator.control_plane.lifecycle import (
    block_dependents,
    failed_current_tasks,
    record_event,
)
from phase_orchestrator.domain import ids
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Finding,
    Gate,
    JSONValue,
    RunStatus,
    Task,
    TaskStatus,
    WorkflowRun,
)
from phase_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from phase_orchestrator.observability.events import EventBus

RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
REMEDIATION_PAYLOAD_KEY = "remediation"
REVERIFICATION_PAYLOAD_KEY = "reverifies"


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    """What one reconcile call changed, for logging and tests."""

    cycle: int
    exhausted: bool
    requeued: tuple[str, ...] = ()
    remediations: tuple[str, ...] = ()
    reverifications: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()


class RetryController:
    """Applies the remediation policy for failed gates."""

    def __init__(
        self,
        *,
        ledger: RetryBudgetLedger | None = None,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._ledger = ledger if ledger is not None else RetryBudgetLedger(logger=self._logger)
        self._event_bus = event_bus
        self._last_outcome: ReconcileOutcome | None = None

    @property
    def last_outcome(self) -> ReconcileOutcome | None:
        return self._last_outcome

    def reconcile(self, run: WorkflowRun, failed_gate: Gate) -> WorkflowRun:
        """Mutate ``run`` in place for ``failed_gate`` and return it."""
        if failed_gate.passed:
            raise ValueError(f"gate for phase {failed_gate.phase!r} passed; nothing to reconcile")
        if run.is_terminal:
            raise ValueError(f"run {run.id} is already terminal ({run.status.value})")

        decision = self._ledger.charge(run, failed_gate)
        if decision.should_stop:
            self._last_outcome = self._exhaust(run, failed_gate)
            return run

        phase = failed_gate.phase
        targets = self._group_by_target(run, failed_gate.blocking_findings)
        replacements: dict[str, str] = {}
        requeued: list[str] = []
        remediations: list[str] = []

        for target_id, findings in targets.items():
            target = run.task(target_id)
            if target.status is TaskStatus.FAILED and target.phase == phase:
                target.status = TaskStatus.READY
                replacements[target.id] = target.id
                requeued.append(target.id)
                record_event(
                    run,
                    self._event_bus,
                    EventType.TASK_REQUEUED,
                    target.id,
                    phase=phase,
                    detail={"finding_ids": [finding.id for finding in findings]},
                )
                continue
            if target.status in (TaskStatus.PENDING, TaskStatus.READY):
                replacements[target.id] = target.id
                continue

            remediation = self._add_remediation(run, target, findings, phase=phase)
            replacements[target.id] = remediation.id
            remediations.append(remediation.id)

        reverifications = self._add_reverifications(
            run, failed_gate.blocking_findings, targets, replacements
        )
        rewired = dict(replacements)
        for original_id, reverify_id in reverifications.items():
            rewired[original_id] = reverify_id
        self._rewire_pending(run, rewired, phase=phase)

        outcome = ReconcileOutcome(
            cycle=run.cycles_executed,
            exhausted=False,
            requeued=tuple(requeued),
            remediations=tuple(remediations),
            reverifications=tuple(reverifications.values()),
        )
        self._last_outcome = outcome
        self._logger.info(
            "retry_reconcile_cycle",
            run_id=run.id,
            phase=phase,
            cycle=outcome.cycle,
            budget_remaining=run.retry_budget_remaining,
            requeued=list(outcome.requeued),
            remediations=list(outcome.remediations),
            reverifications=list(outcome.reverifications),
        )
        return run

    # ------------------------------------------------------------------

    def _exhaust(self, run: WorkflowRun, gate: Gate) -> ReconcileOutcome:
        run.status = RunStatus.FAILED
        run.failure_reason = RETRY_BUDGET_EXHAUSTED
        run.unresolved_findings = tuple(gate.blocking_findings)
        blocked = block_dependents(
            run,
            failed_current_tasks(run),
            reason=RETRY_BUDGET_EXHAUSTED,
            event_bus=self._event_bus,
        )
        record_event(
            run,
            self._event_bus,
            EventType.BUDGET_EXHAUSTED,
            run.id,
            phase=gate.phase,
            detail={
                "cycles_executed": run.cycles_executed,
                "unresolved_finding_ids": [finding.id for finding in gate.blocking_findings],
            },
        )
        self._logger.warning(
            "retry_budget_exhausted",
            run_id=run.id,
            phase=gate.phase,
            cycles_executed=run.cycles_executed,
            unresolved=[finding.id for finding in gate.blocking_findings],
        )
        return ReconcileOutcome(
            cycle=run.cycles_executed,
            exhausted=True,
            blocked=tuple(task.id for task in blocked),
        )

    def _group_by_target(
        self, run: WorkflowRun, findings: tuple[Finding, ...]
    ) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = {}
        for finding in findings:
            target = _current_successor(run, run.task(finding.subject_task_id))
            grouped.setdefault(target.id, []).append(finding)
        return grouped

    def _add_remediation(
        self, run: WorkflowRun, target: Task, findings: list[Finding], *, phase: str
    ) -> Task:
        sequence = run.next_sequence()
        payload: dict[str, JSONValue] = dict(target.payload)
        payload[REMEDIATION_PAYLOAD_KEY] = {
            "target_task_id": target.id,
            "finding_ids": [finding.id for finding in findings],
            "findings": [finding.to_dict() for finding in findings],
        }
        remediation = Task(
            id=ids.task_id(sequence, target.capability),
            capability=target.capability,
            phase=phase,
            sequence=sequence,
            dependencies=(target.id,) if target.status is TaskStatus.COMPLETED else (),
            payload=payload,
            remediates=findings[0].id,
        )
        run.tasks.append(remediation)
        target.superseded_by = remediation.id
        record_event(
            run,
            self._event_bus,
            EventType.REMEDIATION_SCHEDULED,
            remediation.id,
            phase=phase,
            detail={
                "target_task_id": target.id,
                "capability": target.capability,
                "finding_ids": [finding.id for finding in findings],
            },
        )
        return remediation

    def _add_reverifications(
        self,
        run: WorkflowRun,
        findings: tuple[Finding, ...],
        targets: dict[str, list[Finding]],
        replacements: dict[str, str],
    ) -> dict[str, str]:
        target_of = {
            finding.id: target_id
            for target_id, grouped in targets.items()
            for finding in grouped
        }
        needed: dict[str, list[str]] = {}
        for finding in findings:
            target_id = target_of[finding.id]
            if finding.task_id == target_id:
                continue
            needed.setdefault(finding.task_id, [])
            replacement = replacements[target_id]
            if replacement not in needed[finding.task_id]:
                needed[finding.task_id].append(replacement)

        created: dict[str, str] = {}
        for originator_id, extra in needed.items():
            original = run.task(originator_id)
            stand_in = replacements.get(original.id)
            if stand_in is not None:
                # The originator is itself being redone; it waits for the other remediations.
                self._extend_dependencies(run, run.task(stand_in), extra)
                continue
            if not original.is_current:
                continue

            sequence = run.next_sequence()
            dependencies = [replacements.get(dep, dep) for dep in original.dependencies]
            payload: dict[str, JSONValue] = dict(original.payload)
            payload[REVERIFICATION_PAYLOAD_KEY] = original.id
            reverify = Task(
                id=ids.task_id(sequence, original.capability),
                capability=original.capability,
                phase=original.phase,
                sequence=sequence,
                dependencies=_ordered_ids(run, [*dependencies, *extra]),
                payload=payload,
            )
            run.tasks.append(reverify)
            original.superseded_by = reverify.id
            created[original.id] = reverify.id
            record_event(
                run,
                self._event_bus,
                EventType.REMEDIATION_SCHEDULED,
                reverify.id,
                phase=reverify.phase,
                detail={
                    "reverifies": original.id,
                    "capability": original.capability,
                    "depends_on": list(reverify.dependencies),
                },
            )
        return created

    def _extend_dependencies(self, run: WorkflowRun, task: Task, extra: list[str]) -> None:
        graph = TaskGraph.from_run(run)
        acyclic = [
            dep
            for dep in extra
            if dep != task.id and task.id not in graph.get_dependencies(dep, transitive=True)
        ]
        task.dependencies = _ordered_ids(run, [*task.dependencies, *acyclic])

    def _rewire_pending(self, run: WorkflowRun, rewired: dict[str, str], *, phase: str) -> None:
        floor = run.phase_index(phase)
        fresh = set(rewired.values())
        for task in run.tasks:
            if task.id in fresh or not task.is_current:
                continue
            if task.status is not TaskStatus.PENDING or run.phase_index(task.phase) < floor:
                continue
            if not any(dep in rewired for dep in task.dependencies):
                continue
            task.dependencies = _ordered_ids(
                run, [rewired.get(dep, dep) for dep in task.dependencies]
            )


def _current_successor(run: WorkflowRun, task: Task) -> Task:
    """Follow ``superseded_by`` links to the task that currently stands for ``task``."""
    seen = {task.id}
    while task.superseded_by is not None:
        task = run.task(task.superseded_by)
        if task.id in seen:
            raise RuntimeError(f"supersession cycle at task {task.id}")
        seen.add(task.id)
    return task


def _ordered_ids(run: WorkflowRun, task_ids: list[str]) -> tuple[str, ...]:
    unique = dict.fromkeys(task_ids)
    return tuple(sorted(unique, key=lambda task_id: run.task(task_id).sequence))


__all__ = [
    "REMEDIATION_PAYLOAD_KEY",
    "RETRY_BUDGET_EXHAUSTED",
    "REVERIFICATION_PAYLOAD_KEY",
    "ReconcileOutcome",
    "RetryController",
]
