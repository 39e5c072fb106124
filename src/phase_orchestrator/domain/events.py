"""Workflow lifecycle event definitions and serialization."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from phase_orchestrator.domain import ids
from phase_orchestrator.domain.models import JSONValue, as_json_value


class EventType(StrEnum):
    """Lifecycle events emitted by the engine."""

    RUN_STARTED = "RunStarted"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"
    RUN_ABORTED = "RunAborted"

    PHASE_STARTED = "PhaseStarted"
    PHASE_SETTLED = "PhaseSettled"

    TASK_READY = "TaskReady"
    TASK_DISPATCHED = "TaskDispatched"
    TASK_COMPLETED = "TaskCompleted"
    TASK_FAILED = "TaskFailed"
    TASK_BLOCKED = "TaskBlocked"

    FINDING_RECORDED = "FindingRecorded"
    GATE_EVALUATED = "GateEvaluated"
    REMEDIATION_SCHEDULED = "RemediationScheduled"
    TASK_REQUEUED = "TaskRequeued"
    BUDGET_EXHAUSTED = "BudgetExhausted"

    DECISION_REQUESTED = "DecisionRequested"
    DECISION_RESOLVED = "DecisionResolved"


@dataclass(slots=True)
class WorkflowEvent:
    """Serializable event envelope published on the event bus."""

    event_id: str
    event_type: EventType
    run_id: str
    timestamp: datetime
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        self.event_type = EventType(self.event_type)
        ids.validate_run_id(self.run_id)
        if self.timestamp.tzinfo is None or self.timestamp.utcoffset() is None:
            raise ValueError("WorkflowEvent.timestamp: datetime must be timezone-aware UTC")
        self.timestamp = self.timestamp.astimezone(UTC)
        payload = as_json_value(self.payload, "WorkflowEvent.payload")
        if not isinstance(payload, dict):
            raise ValueError("WorkflowEvent.payload: expected object")
        self.payload = payload

    @classmethod
    def create(
        cls,
        event_type: EventType,
        run_id: str,
        payload: dict[str, JSONValue] | None = None,
    ) -> WorkflowEvent:
        return cls(
            event_id=ids.generate_event_id(),
            event_type=event_type,
            run_id=run_id,
            timestamp=datetime.now(tz=UTC),
            payload=dict(payload or {}),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = ["EventType", "WorkflowEvent"]
