"""Run lifecycle helpers shared by the scheduler and the retry controller."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import JSONValue, Task, TaskStatus, WorkflowRun
from phase_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from phase_orchestrator.observability.events import EventBus


def record_event(
    run: WorkflowRun,
    event_bus: EventBus | None,
    event_type: EventType,
    subject: str,
    *,
    phase: str | None = None,
    detail: Mapping[str, JSONValue] | None = None,
) -> None:
    """Append an audit entry to ``run`` and publish the matching live event."""
    payload: dict[str, JSONValue] = {"subject": subject}
    if phase is not None:
        payload["phase"] = phase
    payload.update(detail or {})
    run.record_audit(event_type.value, subject, phase=phase, detail=detail)
    if event_bus is not None:
        event_bus.emit(event_type, run.id, payload)


def block_dependents(
    run: WorkflowRun,
    failed_task_ids: Iterable[str],
    *,
    reason: str,
    event_bus: EventBus | None = None,
) -> tuple[Task, ...]:
    """Mark every pending transitive dependent of ``failed_task_ids`` as blocked.

    Tasks are visited in sequence order; tasks already terminal or in flight are
    left untouched.
    """
    graph = TaskGraph.from_run(run)
    targets: set[str] = set()
    for task_id in failed_task_ids:
        targets.update(graph.get_dependents(task_id, transitive=True))

    blocked: list[Task] = []
    for task in run.iter_ordered_tasks():
        if task.id not in targets or task.status not in _BLOCKABLE:
            continue
        task.status = TaskStatus.BLOCKED
        blocked.append(task)
        record_event(
            run,
            event_bus,
            EventType.TASK_BLOCKED,
            task.id,
            phase=task.phase,
            detail={"reason": reason},
        )
    return tuple(blocked)


def failed_current_tasks(run: WorkflowRun) -> tuple[str, ...]:
    return tuple(
        task.id
        for task in run.iter_ordered_tasks()
        if task.status is TaskStatus.FAILED and task.is_current
    )


_BLOCKABLE = frozenset({TaskStatus.PENDING, TaskStatus.READY})


__all__ = ["block_dependents", "failed_current_tasks", "record_event"]
