"""Unit tests for the retry controller's remediation policy."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from phase_orchestrator.control_plane.retry import (
    REMEDIATION_PAYLOAD_KEY,
    RETRY_BUDGET_EXHAUSTED,
    REVERIFICATION_PAYLOAD_KEY,
    RetryController,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Finding,
    Gate,
    GateVerdict,
    GoalDescriptor,
    RunStatus,
    Severity,
    Task,
    TaskResult,
    TaskStatus,
    WorkerStatus,
    WorkflowRun,
)
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.verification_plane.quality_gate import evaluate

_RUN_ID = "run-01J00000000000000000000000"


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _completed(task_id: str, capability: str, phase: str, sequence: int, **extra: object) -> Task:
    return Task(
        id=task_id,
        capability=capability,
        phase=phase,
        sequence=sequence,
        status=TaskStatus.COMPLETED,
        attempts=1,
        result=TaskResult(status=WorkerStatus.SUCCESS, artifact={"by": task_id}),
        **extra,  # type: ignore[arg-type]
    )


def _run(tasks: list[Task], *, budget: int = 2) -> WorkflowRun:
    return WorkflowRun(
        id=_RUN_ID,
        goal=GoalDescriptor(required_capabilities=tuple(task.capability for task in tasks)),
        phases=("development", "review", "deployment"),
        gate_thresholds={"development": Severity.HIGH, "review": Severity.HIGH},
        tasks=tasks,
        retry_budget_initial=budget,
        retry_budget_remaining=budget,
        status=RunStatus.RUNNING,
        current_phase="review",
    )


def _record(run: WorkflowRun, task: Task, severity: Severity, target: str | None = None) -> Finding:
    finding = Finding(
        id=run.next_finding_id(),
        severity=severity,
        task_id=task.id,
        capability=task.capability,
        phase=task.phase,
        description=f"{severity.value} issue",
        target_task_id=target,
    )
    run.finding_history.append(finding)
    task.findings = (*task.findings, finding)
    return finding


def _gate(run: WorkflowRun, phase: str = "review") -> Gate:
    findings = [finding for finding in run.finding_history if finding.phase == phase]
    gate = evaluate(phase, findings, run.gate_thresholds.get(phase))
    run.gates.append(gate)
    return gate


def _review_rejects_develop() -> tuple[WorkflowRun, Finding]:
    develop = _completed("t01-develop", "develop", "development", 1, payload={"module": "auth"})
    review = _completed("t02-review", "review", "review", 2, dependencies=("t01-develop",))
    run = _run([develop, review])
    finding = _record(run, review, Severity.CRITICAL, target="t01-develop")
    return run, finding


def test_remediation_targets_the_flagged_task_and_reverifies_the_reporter() -> None:
    run, finding = _review_rejects_develop()
    bus = EventBus()
    controller = RetryController(event_bus=bus, logger=RecordingLogger())

    controller.reconcile(run, _gate(run))

    remediation = run.task("t03-develop")
    reverify = run.task("t04-review")
    assert run.retry_budget_remaining == 1
    assert run.cycles_executed == 1
    assert remediation.phase == "review"
    assert remediation.dependencies == ("t01-develop",)
    assert remediation.remediates == finding.id
    assert remediation.payload["module"] == "auth"
    remediation_payload = remediation.payload[REMEDIATION_PAYLOAD_KEY]
    assert isinstance(remediation_payload, dict)
    assert remediation_payload["target_task_id"] == "t01-develop"
    assert remediation_payload["finding_ids"] == [finding.id]
    assert reverify.dependencies == ("t03-develop",)
    assert reverify.payload[REVERIFICATION_PAYLOAD_KEY] == "t02-review"
    assert run.task("t01-develop").superseded_by == "t03-develop"
    assert run.task("t02-review").superseded_by == "t04-review"
    assert run.task("t01-develop").status is TaskStatus.COMPLETED

    outcome = controller.last_outcome
    assert outcome is not None
    assert outcome.remediations == ("t03-develop",)
    assert outcome.reverifications == ("t04-review",)
    assert [event.event_type for event in bus.replay(event_type="RemediationScheduled")] == [
        EventType.REMEDIATION_SCHEDULED,
        EventType.REMEDIATION_SCHEDULED,
    ]


def test_failed_task_in_gate_phase_is_requeued_in_place() -> None:
    review = Task(
        id="t01-review",
        capability="review",
        phase="review",
        sequence=1,
        status=TaskStatus.FAILED,
        attempts=1,
        error_kind="TaskTimeout",
    )
    run = _run([review])
    _record(run, review, Severity.CRITICAL)

    RetryController(logger=RecordingLogger()).reconcile(run, _gate(run))

    assert review.status is TaskStatus.READY
    assert review.is_current
    assert len(run.tasks) == 1
    assert run.audit_log[-1].event == EventType.TASK_REQUEUED.value


def test_reporter_being_redone_waits_for_remediation_instead_of_reverifying() -> None:
    develop = _completed("t01-develop", "develop", "development", 1)
    review = Task(
        id="t02-review",
        capability="review",
        phase="review",
        sequence=2,
        dependencies=("t01-develop",),
        status=TaskStatus.FAILED,
        attempts=1,
    )
    run = _run([develop, review])
    _record(run, review, Severity.HIGH, target="t01-develop")
    _record(run, review, Severity.CRITICAL)

    RetryController(logger=RecordingLogger()).reconcile(run, _gate(run))

    assert review.status is TaskStatus.READY
    assert review.dependencies == ("t01-develop", "t03-develop")
    assert [task.id for task in run.tasks] == ["t01-develop", "t02-review", "t03-develop"]


def test_pending_dependents_in_later_phases_are_rewired() -> None:
    run, _ = _review_rejects_develop()
    deploy = Task(
        id="t03-deploy",
        capability="deploy",
        phase="deployment",
        sequence=3,
        dependencies=("t01-develop", "t02-review"),
    )
    run.tasks.append(deploy)

    RetryController(logger=RecordingLogger()).reconcile(run, _gate(run))

    assert deploy.dependencies == ("t04-develop", "t05-review")
    assert deploy.is_current


def test_second_cycle_follows_supersession_chain() -> None:
    run, _ = _review_rejects_develop()
    controller = RetryController(logger=RecordingLogger())
    controller.reconcile(run, _gate(run))

    for task in run.tasks:
        if task.status is TaskStatus.PENDING:
            task.status = TaskStatus.COMPLETED
            task.result = TaskResult(status=WorkerStatus.SUCCESS, artifact=None)
    original = run.finding_history[0]
    reverify = run.task("t04-review")
    _record(run, reverify, Severity.CRITICAL, target="t03-develop")
    stale_and_new = Gate(
        phase="review",
        threshold=Severity.HIGH,
        verdict=GateVerdict.FAIL,
        blocking_findings=(original, reverify.findings[0]),
        cycle=1,
    )

    controller.reconcile(run, stale_and_new)

    assert run.cycles_executed == 2
    assert run.task("t03-develop").superseded_by == "t05-develop"
    assert run.task("t05-develop").dependencies == ("t03-develop",)
    assert run.task("t06-review").dependencies == ("t05-develop",)


def test_exhausted_budget_fails_run_with_unresolved_findings() -> None:
    run, finding = _review_rejects_develop()
    run.retry_budget_initial = 0
    run.retry_budget_remaining = 0
    logger = RecordingLogger()

    RetryController(logger=logger).reconcile(run, _gate(run))

    assert run.status is RunStatus.FAILED
    assert run.failure_reason == RETRY_BUDGET_EXHAUSTED
    assert run.unresolved_findings == (finding,)
    assert len(run.tasks) == 2
    event, fields = logger.events[-1]
    assert event == "retry_budget_exhausted"
    assert fields["unresolved"] == [finding.id]


def test_exhaustion_blocks_pending_dependents_of_failed_tasks() -> None:
    develop = Task(
        id="t01-develop",
        capability="develop",
        phase="development",
        sequence=1,
        status=TaskStatus.FAILED,
        attempts=1,
    )
    deploy = Task(
        id="t02-deploy",
        capability="deploy",
        phase="deployment",
        sequence=2,
        dependencies=("t01-develop",),
    )
    run = _run([develop, deploy], budget=0)
    _record(run, develop, Severity.CRITICAL)

    controller = RetryController(logger=RecordingLogger())
    controller.reconcile(run, _gate(run, "development"))

    assert deploy.status is TaskStatus.BLOCKED
    assert controller.last_outcome is not None
    assert controller.last_outcome.blocked == ("t02-deploy",)


def test_reconcile_rejects_passed_gate_and_terminal_run() -> None:
    run, _ = _review_rejects_develop()
    controller = RetryController(logger=RecordingLogger())
    passed = Gate(phase="review", threshold=None, verdict=GateVerdict.PASS)
    with pytest.raises(ValueError, match="nothing to reconcile"):
        controller.reconcile(run, passed)

    run.status = RunStatus.SUCCEEDED
    with pytest.raises(ValueError, match="already terminal"):
        controller.reconcile(run, _gate(run))
