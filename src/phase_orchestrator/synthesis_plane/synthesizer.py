"""
phase-orchestrator — result synthesizer.

Purpose
- Merge the outcome of a terminal ``WorkflowRun`` into one ``Deliverable``.

Functional requirements
- Only terminal runs are synthesized.
- Per capability, the artifact of its last completed task wins, walking phases
  in order and tasks by sequence.
- Gate and finding histories are copied verbatim and in order.
- Unresolved findings are reported only for runs that did not succeed.

Non-functional requirements
- No worker is invoked; identical runs produce identical deliverables.
"""

from __future__ import annotations

from typing import Any

import structlog

from phase_orchestrator.domain.models import (
    Deliverable,
    JSONValue,
    RunStatus,
    TaskStatus,
    WorkflowRun,
)


class ResultSynthesizer:
    """Builds deliverables from terminal runs."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def synthesize(self, run: WorkflowRun) -> Deliverable:
        if not run.is_terminal:
            raise ValueError(
                f"run {run.id} is not terminal (status={run.status.value}); cannot synthesize"
            )

        artifacts: dict[str, JSONValue] = {}
        sources: dict[str, str] = {}
        for phase in run.phases:
            for task in sorted(run.tasks_in_phase(phase), key=lambda item: item.sequence):
                if task.status is not TaskStatus.COMPLETED or task.result is None:
                    continue
                artifacts[task.capability] = task.result.artifact
                sources[task.capability] = task.id

        succeeded = run.status is RunStatus.SUCCEEDED
        deliverable = Deliverable(
            run_id=run.id,
            goal_name=run.goal.name,
            final_status=run.status,
            artifacts=artifacts,
            artifact_sources=sources,
            gate_history=tuple(run.gates),
            finding_history=tuple(run.finding_history),
            unresolved_findings=() if succeeded else tuple(run.unresolved_findings),
            failure_reason=None if succeeded else run.failure_reason,
            audit_trail=tuple(run.audit_log),
        )
        self._logger.info(
            "deliverable_synthesized",
            run_id=run.id,
            final_status=run.status.value,
            artifacts=sorted(artifacts),
            findings=len(deliverable.finding_history),
            digest=deliverable.digest(),
        )
        return deliverable


def synthesize(run: WorkflowRun) -> Deliverable:
    return ResultSynthesizer().synthesize(run)


__all__ = ["ResultSynthesizer", "synthesize"]
