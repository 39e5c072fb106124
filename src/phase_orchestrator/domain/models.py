"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import copy
import hashlib
import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, NoReturn, TypeVar, cast

from phase_orchestrator.constants import (
    DEFAULT_RETRY_BUDGET,
    DELIVERABLE_SCHEMA_VERSION,
    SEVERITY_WEIGHT,
)
from phase_orchestrator.domain import ids as domain_ids

if TYPE_CHECKING:
    from collections.abc import Iterator

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHT[self.value]

    def meets(self, threshold: Severity) -> bool:
        """Return whether this severity is at or above ``threshold``."""
        return self.weight >= threshold.weight


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATUSES


_TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED})


class RunStatus(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}


class IdempotencyClass(StrEnum):
    RETRIABLE = "retriable"
    NON_RETRIABLE = "non_retriable"


class WorkerStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class GateVerdict(StrEnum):
    PASS = "pass"
    FAIL = "fail"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FindingReport:
    """Finding as reported by a worker, before the engine stamps its identity."""

    severity: Severity
    description: str
    remediation_hint: str = ""
    target_capability: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "severity", _as_enum(Severity, self.severity, "FindingReport.severity")
        )
        object.__setattr__(
            self, "description", _as_str(self.description, "FindingReport.description")
        )
        object.__setattr__(
            self,
            "remediation_hint",
            _as_str(self.remediation_hint, "FindingReport.remediation_hint", min_len=0),
        )
        if self.target_capability is not None:
            object.__setattr__(
                self,
                "target_capability",
                _as_str(self.target_capability, "FindingReport.target_capability"),
            )

    @classmethod
    def coerce(cls, value: object, path: str) -> FindingReport:
        if isinstance(value, cls):
            return value
        data = _expect_object(
            value,
            path,
            required={"severity", "description"},
            optional={
                "remediation_hint",
                "remediationHint",
                "target_capability",
                "targetCapability",
            },
        )
        return cls(
            severity=_as_enum(Severity, data["severity"], f"{path}.severity"),
            description=_as_str(data["description"], f"{path}.description"),
            remediation_hint=_as_str(
                data.get("remediation_hint", data.get("remediationHint", "")),
                f"{path}.remediation_hint",
                min_len=0,
            ),
            target_capability=_as_optional_str(
                data.get("target_capability", data.get("targetCapability")),
                f"{path}.target_capability",
            ),
        )


@dataclass(frozen=True, slots=True)
class Finding(CanonicalModel):
    """Issue recorded against a task attempt. Never mutated after creation."""

    id: str
    severity: Severity
    task_id: str
    capability: str
    phase: str
    description: str
    remediation_hint: str = ""
    target_task_id: str | None = None
    attempt: int = 1

    def __post_init__(self) -> None:
        domain_ids.validate_finding_id(self.id)
        domain_ids.validate_task_id(self.task_id)
        object.__setattr__(self, "severity", _as_enum(Severity, self.severity, "Finding.severity"))
        if self.target_task_id is None:
            object.__setattr__(self, "target_task_id", self.task_id)
        else:
            domain_ids.validate_task_id(self.target_task_id)
        _as_int(self.attempt, "Finding.attempt", minimum=1)

    @property
    def subject_task_id(self) -> str:
        return self.target_task_id or self.task_id

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Finding:
        path = "Finding"
        parsed = _expect_object(
            data,
            path,
            required={"id", "severity", "task_id", "capability", "phase", "description"},
            optional={"remediation_hint", "target_task_id", "attempt"},
        )
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            severity=_as_enum(Severity, parsed["severity"], f"{path}.severity"),
            task_id=_as_str(parsed["task_id"], f"{path}.task_id"),
            capability=_as_str(parsed["capability"], f"{path}.capability"),
            phase=_as_str(parsed["phase"], f"{path}.phase"),
            description=_as_str(parsed["description"], f"{path}.description"),
            remediation_hint=_as_str(
                parsed.get("remediation_hint", ""), f"{path}.remediation_hint", min_len=0
            ),
            target_task_id=_as_optional_str(parsed.get("target_task_id"), f"{path}.target_task_id"),
            attempt=_as_int(parsed.get("attempt", 1), f"{path}.attempt", minimum=1),
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TaskResult(CanonicalModel):
    """Terminal outcome of one task attempt."""

    status: WorkerStatus
    artifact: JSONValue = None
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is WorkerStatus.SUCCESS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskResult:
        path = "TaskResult"
        parsed = _expect_object(
            data, path, required={"status"}, optional={"artifact", "error_kind", "error_message"}
        )
        return cls(
            status=_as_enum(WorkerStatus, parsed["status"], f"{path}.status"),
            artifact=_as_json_value(parsed.get("artifact"), f"{path}.artifact"),
            error_kind=_as_optional_str(parsed.get("error_kind"), f"{path}.error_kind"),
            error_message=_as_optional_str(parsed.get("error_message"), f"{path}.error_message"),
        )


@dataclass(slots=True)
class Task(CanonicalModel):
    """One unit of capability work inside a workflow run."""

    id: str
    capability: str
    phase: str
    sequence: int
    dependencies: tuple[str, ...] = ()
    payload: dict[str, JSONValue] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    result: TaskResult | None = None
    findings: tuple[Finding, ...] = ()
    remediates: str | None = None
    superseded_by: str | None = None
    error_kind: str | None = None

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.id)
        self.capability = _as_str(self.capability, "Task.capability")
        self.phase = _as_str(self.phase, "Task.phase")
        _as_int(self.sequence, "Task.sequence", minimum=1)
        _as_int(self.attempts, "Task.attempts", minimum=0)
        self.status = _as_enum(TaskStatus, self.status, "Task.status")
        self.dependencies = tuple(self.dependencies)
        if self.id in self.dependencies:
            _fail("Task.dependencies", f"task {self.id} cannot depend on itself")
        self.payload = _as_json_object(self.payload, "Task.payload")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_current(self) -> bool:
        """A task is current until a remediation or re-verification replaces it."""
        return self.superseded_by is None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        path = "Task"
        parsed = _expect_object(
            data,
            path,
            required={"id", "capability", "phase", "sequence"},
            optional={
                "dependencies",
                "payload",
                "status",
                "attempts",
                "result",
                "findings",
                "remediates",
                "superseded_by",
                "error_kind",
            },
        )
        raw_result = parsed.get("result")
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            capability=_as_str(parsed["capability"], f"{path}.capability"),
            phase=_as_str(parsed["phase"], f"{path}.phase"),
            sequence=_as_int(parsed["sequence"], f"{path}.sequence", minimum=1),
            dependencies=_as_str_tuple(
                parsed.get("dependencies", ()), f"{path}.dependencies", unique=True
            ),
            payload=_as_json_object(parsed.get("payload", {}), f"{path}.payload"),
            status=_as_enum(TaskStatus, parsed.get("status", "pending"), f"{path}.status"),
            attempts=_as_int(parsed.get("attempts", 0), f"{path}.attempts", minimum=0),
            result=None
            if raw_result is None
            else TaskResult.from_dict(_as_mapping(raw_result, f"{path}.result")),
            findings=tuple(
                Finding.from_dict(_as_mapping(item, f"{path}.findings[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("findings", ()), f"{path}.findings")
                )
            ),
            remediates=_as_optional_str(parsed.get("remediates"), f"{path}.remediates"),
            superseded_by=_as_optional_str(parsed.get("superseded_by"), f"{path}.superseded_by"),
            error_kind=_as_optional_str(parsed.get("error_kind"), f"{path}.error_kind"),
        )


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Gate(CanonicalModel):
    """Verdict of one phase-boundary evaluation."""

    phase: str
    threshold: Severity | None
    verdict: GateVerdict
    blocking_findings: tuple[Finding, ...] = ()
    evaluated_finding_ids: tuple[str, ...] = ()
    cycle: int = 0

    @property
    def passed(self) -> bool:
        return self.verdict is GateVerdict.PASS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Gate:
        path = "Gate"
        parsed = _expect_object(
            data,
            path,
            required={"phase", "threshold", "verdict"},
            optional={"blocking_findings", "evaluated_finding_ids", "cycle"},
        )
        raw_threshold = parsed["threshold"]
        return cls(
            phase=_as_str(parsed["phase"], f"{path}.phase"),
            threshold=None
            if raw_threshold is None
            else _as_enum(Severity, raw_threshold, f"{path}.threshold"),
            verdict=_as_enum(GateVerdict, parsed["verdict"], f"{path}.verdict"),
            blocking_findings=_parse_findings(
                parsed.get("blocking_findings", ()), f"{path}.blocking_findings"
            ),
            evaluated_finding_ids=_as_str_tuple(
                parsed.get("evaluated_finding_ids", ()),
                f"{path}.evaluated_finding_ids",
                unique=True,
            ),
            cycle=_as_int(parsed.get("cycle", 0), f"{path}.cycle", minimum=0),
        )


# ---------------------------------------------------------------------------
# Goal descriptor
# ---------------------------------------------------------------------------

_GOAL_KEY_ALIASES: dict[str, str] = {
    "requiredCapabilities": "required_capabilities",
    "dependencyHints": "dependency_hints",
    "phaseOverrides": "phase_overrides",
    "gateThresholds": "gate_thresholds",
    "retryBudget": "retry_budget",
}


@dataclass(frozen=True, slots=True)
class GoalDescriptor(CanonicalModel):
    """Engine input: what capabilities a goal needs and how to sequence them."""

    required_capabilities: tuple[str, ...]
    dependency_hints: tuple[tuple[str, str], ...] = ()
    phase_overrides: Mapping[str, str] = field(default_factory=dict)
    gate_thresholds: Mapping[str, Severity | None] = field(default_factory=dict)
    retry_budget: int | None = None
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    phases: tuple[str, ...] = ()
    name: str = "goal"

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "required_capabilities",
            _as_str_tuple(
                self.required_capabilities,
                "GoalDescriptor.required_capabilities",
                unique=False,
            ),
        )
        hints: list[tuple[str, str]] = []
        for index, hint in enumerate(self.dependency_hints):
            item_path = f"GoalDescriptor.dependency_hints[{index}]"
            pair = _as_sequence(hint, item_path)
            if len(pair) != 2:
                _fail(item_path, "must contain exactly two capability names")
            hints.append((_as_str(pair[0], f"{item_path}[0]"), _as_str(pair[1], f"{item_path}[1]")))
        object.__setattr__(self, "dependency_hints", tuple(hints))
        object.__setattr__(
            self,
            "phase_overrides",
            _as_str_dict(self.phase_overrides, "GoalDescriptor.phase_overrides"),
        )
        thresholds: dict[str, Severity | None] = {}
        raw_thresholds = _as_mapping(self.gate_thresholds, "GoalDescriptor.gate_thresholds")
        for phase, raw in raw_thresholds.items():
            thresholds[_as_str(phase, "GoalDescriptor.gate_thresholds.<key>")] = parse_threshold(
                raw, f"GoalDescriptor.gate_thresholds.{phase}"
            )
        object.__setattr__(self, "gate_thresholds", thresholds)
        if self.retry_budget is not None:
            _as_int(self.retry_budget, "GoalDescriptor.retry_budget")
        object.__setattr__(
            self, "payload", _as_json_object(self.payload, "GoalDescriptor.payload")
        )
        object.__setattr__(
            self,
            "phases",
            _as_str_tuple(self.phases, "GoalDescriptor.phases", unique=True),
        )
        object.__setattr__(self, "name", _as_str(self.name, "GoalDescriptor.name"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GoalDescriptor:
        path = "GoalDescriptor"
        normalized: dict[str, object] = {}
        for key, value in _as_mapping(data, path).items():
            normalized[_GOAL_KEY_ALIASES.get(key, key)] = value
        parsed = _expect_object(
            normalized,
            path,
            required={"required_capabilities"},
            optional={
                "dependency_hints",
                "phase_overrides",
                "gate_thresholds",
                "retry_budget",
                "payload",
                "phases",
                "name",
                "schema_version",
            },
        )
        return cls(
            required_capabilities=_as_str_tuple(
                parsed["required_capabilities"], f"{path}.required_capabilities", unique=False
            ),
            dependency_hints=tuple(
                _as_hint(item, f"{path}.dependency_hints[{index}]")
                for index, item in enumerate(
                    _as_sequence(parsed.get("dependency_hints", ()), f"{path}.dependency_hints")
                )
            ),
            phase_overrides=_as_str_dict(
                parsed.get("phase_overrides", {}), f"{path}.phase_overrides"
            ),
            gate_thresholds=cast(
                "Mapping[str, Severity | None]",
                _as_mapping(parsed.get("gate_thresholds", {}), f"{path}.gate_thresholds"),
            ),
            retry_budget=None
            if parsed.get("retry_budget") is None
            else _as_int(parsed["retry_budget"], f"{path}.retry_budget"),
            payload=_as_json_object(parsed.get("payload", {}), f"{path}.payload"),
            phases=_as_str_tuple(
                parsed.get("phases", ()), f"{path}.phases", unique=True
            ),
            name=_as_str(parsed.get("name", "goal"), f"{path}.name"),
        )


# ---------------------------------------------------------------------------
# Workflow run (aggregate root)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AuditEntry(CanonicalModel):
    """One deterministic audit-trail line recorded while the run executes."""

    sequence: int
    event: str
    subject: str
    phase: str | None = None
    detail: Mapping[str, JSONValue] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AuditEntry:
        path = "AuditEntry"
        parsed = _expect_object(
            data, path, required={"sequence", "event", "subject"}, optional={"phase", "detail"}
        )
        return cls(
            sequence=_as_int(parsed["sequence"], f"{path}.sequence", minimum=1),
            event=_as_str(parsed["event"], f"{path}.event"),
            subject=_as_str(parsed["subject"], f"{path}.subject"),
            phase=_as_optional_str(parsed.get("phase"), f"{path}.phase"),
            detail=_as_json_object(parsed.get("detail", {}), f"{path}.detail"),
        )


@dataclass(slots=True)
class WorkflowRun(CanonicalModel):
    """Aggregate root owned by the engine for the lifetime of one goal."""

    id: str
    goal: GoalDescriptor
    phases: tuple[str, ...]
    gate_thresholds: dict[str, Severity | None]
    tasks: list[Task] = field(default_factory=list)
    gates: list[Gate] = field(default_factory=list)
    finding_history: list[Finding] = field(default_factory=list)
    audit_log: list[AuditEntry] = field(default_factory=list)
    retry_budget_initial: int = DEFAULT_RETRY_BUDGET
    retry_budget_remaining: int = DEFAULT_RETRY_BUDGET
    cycles_executed: int = 0
    current_phase: str | None = None
    status: RunStatus = RunStatus.CREATED
    failure_reason: str | None = None
    unresolved_findings: tuple[Finding, ...] = ()

    def __post_init__(self) -> None:
        domain_ids.validate_run_id(self.id)
        self.phases = _as_str_tuple(self.phases, "WorkflowRun.phases", unique=True)
        _as_int(self.retry_budget_initial, "WorkflowRun.retry_budget_initial", minimum=0)
        _as_int(self.retry_budget_remaining, "WorkflowRun.retry_budget_remaining", minimum=0)
        if self.retry_budget_remaining > self.retry_budget_initial:
            _fail("WorkflowRun.retry_budget_remaining", "cannot exceed retry_budget_initial")
        self.status = _as_enum(RunStatus, self.status, "WorkflowRun.status")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def task(self, task_id: str) -> Task:
        for item in self.tasks:
            if item.id == task_id:
                return item
        raise KeyError(f"unknown task: {task_id}")

    def tasks_in_phase(self, phase: str) -> tuple[Task, ...]:
        return tuple(item for item in self.tasks if item.phase == phase)

    def iter_ordered_tasks(self) -> Iterator[Task]:
        yield from sorted(self.tasks, key=lambda item: item.sequence)

    def phase_index(self, phase: str) -> int:
        try:
            return self.phases.index(phase)
        except ValueError:
            raise KeyError(f"unknown phase: {phase}") from None

    def next_sequence(self) -> int:
        return max((item.sequence for item in self.tasks), default=0) + 1

    def next_finding_id(self) -> str:
        return domain_ids.finding_id(len(self.finding_history) + 1)

    def record_audit(
        self,
        event: str,
        subject: str,
        *,
        phase: str | None = None,
        detail: Mapping[str, JSONValue] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            sequence=len(self.audit_log) + 1,
            event=event,
            subject=subject,
            phase=phase,
            detail=dict(detail or {}),
        )
        self.audit_log.append(entry)
        return entry

    def snapshot(self) -> WorkflowRun:
        """Deep copy suitable for readers that must not race live mutation."""
        return copy.deepcopy(self)

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for item in self.tasks:
            counts[item.status.value] += 1
        return counts

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkflowRun:
        path = "WorkflowRun"
        parsed = _expect_object(
            data,
            path,
            required={"id", "goal", "phases", "gate_thresholds"},
            optional={
                "tasks",
                "gates",
                "finding_history",
                "audit_log",
                "retry_budget_initial",
                "retry_budget_remaining",
                "cycles_executed",
                "current_phase",
                "status",
                "failure_reason",
                "unresolved_findings",
            },
        )
        thresholds = {
            _as_str(key, f"{path}.gate_thresholds.<key>"): parse_threshold(
                value, f"{path}.gate_thresholds.{key}"
            )
            for key, value in _as_mapping(
                parsed["gate_thresholds"], f"{path}.gate_thresholds"
            ).items()
        }
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            goal=GoalDescriptor.from_dict(_as_mapping(parsed["goal"], f"{path}.goal")),
            phases=_as_str_tuple(parsed["phases"], f"{path}.phases", unique=True),
            gate_thresholds=thresholds,
            tasks=[
                Task.from_dict(_as_mapping(item, f"{path}.tasks[{index}]"))
                for index, item in enumerate(_as_sequence(parsed.get("tasks", ()), f"{path}.tasks"))
            ],
            gates=[
                Gate.from_dict(_as_mapping(item, f"{path}.gates[{index}]"))
                for index, item in enumerate(_as_sequence(parsed.get("gates", ()), f"{path}.gates"))
            ],
            finding_history=list(
                _parse_findings(parsed.get("finding_history", ()), f"{path}.finding_history")
            ),
            audit_log=[
                AuditEntry.from_dict(_as_mapping(item, f"{path}.audit_log[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("audit_log", ()), f"{path}.audit_log")
                )
            ],
            retry_budget_initial=_as_int(
                parsed.get("retry_budget_initial", DEFAULT_RETRY_BUDGET),
                f"{path}.retry_budget_initial",
                minimum=0,
            ),
            retry_budget_remaining=_as_int(
                parsed.get("retry_budget_remaining", DEFAULT_RETRY_BUDGET),
                f"{path}.retry_budget_remaining",
                minimum=0,
            ),
            cycles_executed=_as_int(
                parsed.get("cycles_executed", 0), f"{path}.cycles_executed", minimum=0
            ),
            current_phase=_as_optional_str(parsed.get("current_phase"), f"{path}.current_phase"),
            status=_as_enum(RunStatus, parsed.get("status", "created"), f"{path}.status"),
            failure_reason=_as_optional_str(parsed.get("failure_reason"), f"{path}.failure_reason"),
            unresolved_findings=_parse_findings(
                parsed.get("unresolved_findings", ()), f"{path}.unresolved_findings"
            ),
        )


# ---------------------------------------------------------------------------
# Deliverable (engine output)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Deliverable(CanonicalModel):
    """Ordered, deterministic synthesis of a terminal workflow run."""

    run_id: str
    goal_name: str
    final_status: RunStatus
    artifacts: Mapping[str, JSONValue]
    artifact_sources: Mapping[str, str]
    gate_history: tuple[Gate, ...]
    finding_history: tuple[Finding, ...]
    unresolved_findings: tuple[Finding, ...] = ()
    failure_reason: str | None = None
    audit_trail: tuple[AuditEntry, ...] = ()
    schema_version: int = DELIVERABLE_SCHEMA_VERSION

    @property
    def succeeded(self) -> bool:
        return self.final_status is RunStatus.SUCCEEDED

    def digest(self) -> str:
        """SHA-256 of the canonical JSON form."""
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    def raise_for_status(self) -> None:
        """Raise the matching ``WorkflowFailed`` subclass unless the run succeeded."""
        from phase_orchestrator.domain.errors import (
            RetryBudgetExhausted,
            RunAborted,
            UnrecoverableTaskFailure,
            WorkflowFailed,
        )

        if self.final_status is RunStatus.SUCCEEDED:
            return
        message = f"run {self.run_id} {self.final_status.value}: {self.failure_reason or 'unknown'}"
        if self.final_status is RunStatus.ABORTED:
            raise RunAborted(message, unresolved_findings=self.unresolved_findings)
        if self.failure_reason == "retry_budget_exhausted":
            raise RetryBudgetExhausted(message, unresolved_findings=self.unresolved_findings)
        if self.failure_reason == "unrecoverable_task_failure":
            raise UnrecoverableTaskFailure(message, unresolved_findings=self.unresolved_findings)
        raise WorkflowFailed(message, unresolved_findings=self.unresolved_findings)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Deliverable:
        path = "Deliverable"
        parsed = _expect_object(
            data,
            path,
            required={
                "run_id",
                "goal_name",
                "final_status",
                "artifacts",
                "artifact_sources",
                "gate_history",
                "finding_history",
            },
            optional={"unresolved_findings", "failure_reason", "audit_trail", "schema_version"},
        )
        return cls(
            run_id=_as_str(parsed["run_id"], f"{path}.run_id"),
            goal_name=_as_str(parsed["goal_name"], f"{path}.goal_name"),
            final_status=_as_enum(RunStatus, parsed["final_status"], f"{path}.final_status"),
            artifacts=_as_json_object(parsed["artifacts"], f"{path}.artifacts"),
            artifact_sources=_as_str_dict(parsed["artifact_sources"], f"{path}.artifact_sources"),
            gate_history=tuple(
                Gate.from_dict(_as_mapping(item, f"{path}.gate_history[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed["gate_history"], f"{path}.gate_history")
                )
            ),
            finding_history=_parse_findings(parsed["finding_history"], f"{path}.finding_history"),
            unresolved_findings=_parse_findings(
                parsed.get("unresolved_findings", ()), f"{path}.unresolved_findings"
            ),
            failure_reason=_as_optional_str(parsed.get("failure_reason"), f"{path}.failure_reason"),
            audit_trail=tuple(
                AuditEntry.from_dict(_as_mapping(item, f"{path}.audit_trail[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("audit_trail", ()), f"{path}.audit_trail")
                )
            ),
            schema_version=_as_int(
                parsed.get("schema_version", DELIVERABLE_SCHEMA_VERSION),
                f"{path}.schema_version",
                minimum=1,
            ),
        )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def parse_threshold(value: object, path: str) -> Severity | None:
    """Parse a gate threshold; ``None`` or ``"none"`` means the gate never blocks."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() == "none":
        return None
    return _as_enum(Severity, value.strip().lower() if isinstance(value, str) else value, path)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _kind(value: object) -> str:
    return type(value).__name__


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    """String-keyed copy of ``value`` holding every ``required`` key and nothing unlisted."""
    parsed = dict(_as_mapping(value, path))
    if bad_keys := [key for key in parsed if not isinstance(key, str)]:
        _fail(path, f"object keys must be strings, got {_kind(bad_keys[0])}")
    if unknown := sorted(parsed.keys() - required - (optional or set())):
        _fail(path, f"unexpected fields: {unknown}")
    if missing := sorted(required - parsed.keys()):
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return cast("Mapping[str, object]", value)
    _fail(path, f"expected object, got {_kind(value)}")


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    """Stripped text whose length lies within ``[min_len, max_len]``."""
    if not isinstance(value, str):
        _fail(path, f"expected string, got {_kind(value)}")
    text = value.strip()
    if len(text) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(text) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return text


def _as_optional_str(value: object, path: str) -> str | None:
    return None if value is None else _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {_kind(value)}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    members = {member.value: member for member in enum_type}
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {_kind(value)}")
    if value not in members:
        _fail(path, f"invalid value {value!r}; expected one of: {', '.join(sorted(members))}")
    return members[value]


def _as_sequence(value: object, path: str) -> list[object]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {_kind(value)}")
    return list(value)


def _as_str_tuple(value: object, path: str, *, unique: bool) -> tuple[str, ...]:
    items = _as_sequence(value, path)
    if len(items) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
    texts = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))
    if unique and len(frozenset(texts)) < len(texts):
        _fail(path, "contains duplicate values")
    return texts


def _as_hint(value: object, path: str) -> tuple[str, str]:
    pair = _as_sequence(value, path)
    if len(pair) != 2:
        _fail(path, "must contain exactly two capability names")
    return (_as_str(pair[0], f"{path}[0]"), _as_str(pair[1], f"{path}[1]"))


def _as_str_dict(value: object, path: str, *, max_entries: int = 128) -> dict[str, str]:
    entries = _as_mapping(value, path)
    if len(entries) > max_entries:
        _fail(path, f"contains too many entries (>{max_entries})")
    return {
        (name := _as_str(key, f"{path}.<key>")): _as_str(item, f"{path}.{name}")
        for key, item in entries.items()
    }


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    """Validate ``value`` as JSON: finite floats, string keys, bounded size and nesting."""
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    match value:
        case None | bool() | int() | str():
            return value
        case float() if math.isfinite(value):
            return value
        case float():
            _fail(path, "float values must be finite")
        case list() | tuple():
            if len(value) > _MAX_JSON_COLLECTION:
                _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
            return [
                _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
                for index, item in enumerate(value)
            ]
        case Mapping():
            if len(value) > _MAX_JSON_COLLECTION:
                _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
            out: dict[str, JSONValue] = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    _fail(path, f"object key must be string, got {_kind(key)}")
                out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
            return out
    _fail(path, f"value is not JSON-serializable ({_kind(value)})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if isinstance(parsed, dict):
        return parsed
    _fail(path, "expected JSON object")


def _parse_findings(value: object, path: str) -> tuple[Finding, ...]:
    return tuple(
        Finding.from_dict(_as_mapping(item, f"{path}[{index}]"))
        for index, item in enumerate(_as_sequence(value, path))
    )


def _serialize_value(value: object, path: str) -> JSONValue:
    """Canonical JSON form of a model: enums by value, tuples as arrays, nested dataclasses."""
    if isinstance(value, Enum):
        if isinstance(value.value, str):
            return value.value
        _fail(path, "enum value must be string")
    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        if any(not isinstance(key, str) for key in value):
            _fail(path, "dict keys must be strings")
        return {key: _serialize_value(item, f"{path}.{key}") for key, item in value.items()}
    if value is None or isinstance(value, (bool, int, str, float)):
        return _as_json_value(value, path)
    _fail(path, f"cannot serialize value of type {_kind(value)}")


def as_json_value(value: object, path: str) -> JSONValue:
    """Validate an arbitrary worker artifact as a bounded JSON value."""
    return _as_json_value(value, path)


__all__ = [
    "AuditEntry",
    "CanonicalModel",
    "Deliverable",
    "Finding",
    "FindingReport",
    "Gate",
    "GateVerdict",
    "GoalDescriptor",
    "IdempotencyClass",
    "JSONValue",
    "RunStatus",
    "Severity",
    "Task",
    "TaskResult",
    "TaskStatus",
    "WorkerStatus",
    "WorkflowRun",
    "as_json_value",
    "parse_threshold",
]
