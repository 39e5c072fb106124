"""Unit tests for domain model validation and canonical serialization."""

from __future__ import annotations

import json

import pytest

from phase_orchestrator.domain.errors import (
    RetryBudgetExhausted,
    RunAborted,
    UnrecoverableTaskFailure,
)
from phase_orchestrator.domain.models import (
    Deliverable,
    Finding,
    FindingReport,
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
    parse_threshold,
)

_RUN_ID = "run-01J00000000000000000000000"


def _finding(index: int, severity: Severity = Severity.HIGH, **overrides: object) -> Finding:
    values: dict[str, object] = {
        "id": f"f-{index:04d}",
        "severity": severity,
        "task_id": "t02-review",
        "capability": "review",
        "phase": "review",
        "description": f"issue {index}",
    }
    values.update(overrides)
    return Finding(**values)  # type: ignore[arg-type]


def test_severity_ordering_meets_threshold() -> None:
    assert Severity.CRITICAL.meets(Severity.HIGH)
    assert Severity.HIGH.meets(Severity.HIGH)
    assert not Severity.MEDIUM.meets(Severity.HIGH)
    assert [item.weight for item in Severity] == [1, 2, 3, 4]


def test_parse_threshold_accepts_none_spellings() -> None:
    assert parse_threshold(None, "t") is None
    assert parse_threshold("None", "t") is None
    assert parse_threshold(" HIGH ", "t") is Severity.HIGH
    with pytest.raises(ValueError, match="invalid value 'severe'"):
        parse_threshold("severe", "t")


def test_finding_defaults_target_to_originating_task() -> None:
    finding = _finding(1)
    assert finding.target_task_id == "t02-review"
    assert finding.subject_task_id == "t02-review"

    redirected = _finding(2, target_task_id="t01-develop")
    assert redirected.subject_task_id == "t01-develop"

    with pytest.raises(ValueError, match="finding_id must look like"):
        _finding(3, id="finding-3")
    with pytest.raises(ValueError, match="Finding.attempt"):
        _finding(4, attempt=0)


def test_finding_report_coerces_camel_case_mapping() -> None:
    report = FindingReport.coerce(
        {
            "severity": "critical",
            "description": "  missing input validation ",
            "remediationHint": "validate inputs",
            "targetCapability": "develop",
        },
        "findings[0]",
    )
    assert report.severity is Severity.CRITICAL
    assert report.description == "missing input validation"
    assert report.remediation_hint == "validate inputs"
    assert report.target_capability == "develop"

    with pytest.raises(ValueError, match="unexpected fields"):
        FindingReport.coerce({"severity": "low", "description": "x", "extra": 1}, "f")


def test_task_rejects_self_dependency_and_non_json_payload() -> None:
    with pytest.raises(ValueError, match="cannot depend on itself"):
        Task(id="t01-develop", capability="develop", phase="development", sequence=1,
             dependencies=("t01-develop",))
    with pytest.raises(ValueError, match="not JSON-serializable"):
        Task(id="t01-develop", capability="develop", phase="development", sequence=1,
             payload={"when": object()})


def test_goal_descriptor_from_dict_accepts_camel_case_and_defaults_budget() -> None:
    goal = GoalDescriptor.from_dict(
        {
            "requiredCapabilities": ["develop", "review"],
            "dependencyHints": [["develop", "review"]],
            "gateThresholds": {"review": "none", "development": "HIGH"},
            "payload": {"ticket": "OPS-12"},
        }
    )
    assert goal.required_capabilities == ("develop", "review")
    assert goal.dependency_hints == (("develop", "review"),)
    assert goal.gate_thresholds == {"review": None, "development": Severity.HIGH}
    assert goal.retry_budget is None
    assert goal.name == "goal"

    explicit = GoalDescriptor.from_dict({"required_capabilities": ["develop"], "retry_budget": 0})
    assert explicit.retry_budget == 0

    with pytest.raises(ValueError, match="exactly two capability names"):
        GoalDescriptor.from_dict(
            {"required_capabilities": ["develop"], "dependency_hints": [["develop"]]}
        )
    with pytest.raises(ValueError, match="unexpected fields"):
        GoalDescriptor.from_dict({"required_capabilities": ["develop"], "budget": 1})


def test_workflow_run_budget_invariants() -> None:
    goal = GoalDescriptor(required_capabilities=("develop",))
    with pytest.raises(ValueError, match="cannot exceed retry_budget_initial"):
        WorkflowRun(
            id=_RUN_ID,
            goal=goal,
            phases=("development",),
            gate_thresholds={},
            retry_budget_initial=1,
            retry_budget_remaining=2,
        )


def test_workflow_run_round_trips_through_json() -> None:
    goal = GoalDescriptor(
        required_capabilities=("develop", "review"),
        dependency_hints=(("develop", "review"),),
        retry_budget=1,
        name="checkout",
    )
    finding = _finding(1, Severity.CRITICAL, target_task_id="t01-develop")
    run = WorkflowRun(
        id=_RUN_ID,
        goal=goal,
        phases=("development", "review"),
        gate_thresholds={"development": Severity.HIGH, "review": None},
        tasks=[
            Task(
                id="t01-develop",
                capability="develop",
                phase="development",
                sequence=1,
                status=TaskStatus.COMPLETED,
                attempts=1,
                result=TaskResult(status=WorkerStatus.SUCCESS, artifact={"diff": "+1"}),
            ),
            Task(
                id="t02-review",
                capability="review",
                phase="review",
                sequence=2,
                dependencies=("t01-develop",),
                status=TaskStatus.COMPLETED,
                findings=(finding,),
            ),
        ],
        gates=[
            Gate(
                phase="review",
                threshold=Severity.HIGH,
                verdict=GateVerdict.FAIL,
                blocking_findings=(finding,),
                evaluated_finding_ids=(finding.id,),
            )
        ],
        finding_history=[finding],
        retry_budget_initial=1,
        retry_budget_remaining=1,
    )
    run.record_audit("run_planned", run.id, detail={"tasks": 2})

    restored = WorkflowRun.from_json(run.to_json())

    assert restored == run
    assert restored.to_json() == run.to_json()
    assert restored.gate_thresholds["review"] is None
    assert restored.tasks[1].findings[0].target_task_id == "t01-develop"


def test_workflow_run_helpers() -> None:
    run = WorkflowRun(
        id=_RUN_ID,
        goal=GoalDescriptor(required_capabilities=("develop",)),
        phases=("development",),
        gate_thresholds={},
        tasks=[Task(id="t01-develop", capability="develop", phase="development", sequence=1)],
    )
    assert run.next_sequence() == 2
    assert run.next_finding_id() == "f-0001"
    assert run.status_counts()["pending"] == 1
    assert run.phase_index("development") == 0
    with pytest.raises(KeyError, match="unknown phase"):
        run.phase_index("deployment")
    with pytest.raises(KeyError, match="unknown task"):
        run.task("t09-missing")

    copy = run.snapshot()
    copy.tasks[0].status = TaskStatus.COMPLETED
    assert run.tasks[0].status is TaskStatus.PENDING


def _deliverable(status: RunStatus, reason: str | None) -> Deliverable:
    unresolved = (_finding(1, Severity.CRITICAL),) if reason else ()
    return Deliverable(
        run_id=_RUN_ID,
        goal_name="goal",
        final_status=status,
        artifacts={"develop": {"diff": "+1"}},
        artifact_sources={"develop": "t01-develop"},
        gate_history=(),
        finding_history=unresolved,
        unresolved_findings=unresolved,
        failure_reason=reason,
    )


def test_deliverable_json_round_trip_and_digest_is_stable() -> None:
    deliverable = _deliverable(RunStatus.FAILED, "retry_budget_exhausted")
    restored = Deliverable.from_json(deliverable.to_json())

    assert restored == deliverable
    assert restored.digest() == deliverable.digest()
    assert json.loads(deliverable.to_json())["schema_version"] == 1


@pytest.mark.parametrize(
    ("status", "reason", "error_type"),
    [
        (RunStatus.FAILED, "retry_budget_exhausted", RetryBudgetExhausted),
        (RunStatus.FAILED, "unrecoverable_task_failure", UnrecoverableTaskFailure),
        (RunStatus.ABORTED, "operator request", RunAborted),
    ],
)
def test_deliverable_raise_for_status_maps_failure_reason(
    status: RunStatus, reason: str, error_type: type[Exception]
) -> None:
    with pytest.raises(error_type) as error:
        _deliverable(status, reason).raise_for_status()
    assert reason in str(error.value)

    _deliverable(RunStatus.SUCCEEDED, None).raise_for_status()
