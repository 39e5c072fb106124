"""
phase-orchestrator — unit tests for the workflow event bus

Purpose
- Validate event bus fanout resilience and replay semantics.

What this test file should cover
- Sync and async subscriber support.
- Subscriber exception isolation.
- Ring-buffer replay ordering and filters.
"""

from __future__ import annotations

import pytest

from phase_orchestrator.domain.events import EventType, WorkflowEvent
from phase_orchestrator.observability.events import EventBus

_RUN_A = "run-01J00000000000000000000000"
_RUN_B = "run-01J00000000000000000000001"


def test_subscribers_receive_events_in_publish_order() -> None:
    bus = EventBus(buffer_size=10)
    sub_a: list[str] = []
    sub_b: list[str] = []

    bus.subscribe(None, lambda event: sub_a.append(event.event_type.value))
    bus.subscribe(EventType.RUN_COMPLETED, lambda event: sub_b.append(event.event_type.value))

    bus.emit("RunStarted", _RUN_A, {"x": 1})
    bus.emit(EventType.RUN_COMPLETED, _RUN_A, {"x": 2})

    assert sub_a == ["RunStarted", "RunCompleted"]
    assert sub_b == ["RunCompleted"]


def test_run_scoped_subscription_and_unsubscribe() -> None:
    bus = EventBus()
    seen: list[str] = []
    token = bus.subscribe(None, lambda event: seen.append(event.run_id), run_id=_RUN_B)

    bus.emit(EventType.TASK_READY, _RUN_A)
    bus.emit(EventType.TASK_READY, _RUN_B)
    bus.unsubscribe(token)
    bus.emit(EventType.TASK_READY, _RUN_B)

    assert seen == [_RUN_B]


def test_failing_subscriber_is_isolated() -> None:
    bus = EventBus()
    delivered: list[WorkflowEvent] = []

    def broken(event: WorkflowEvent) -> None:
        raise RuntimeError("subscriber exploded")

    bus.subscribe(None, broken)
    bus.subscribe(None, delivered.append)

    event = bus.emit(EventType.TASK_FAILED, _RUN_A, {"subject": "t01-compile"})

    assert delivered == [event]
    (error,) = bus.dispatch_errors()
    assert error.event_id == event.event_id
    assert error.target == "broken"
    assert error.error_type == "RuntimeError"
    assert error.message == "subscriber exploded"


async def test_async_subscribers_are_awaited_by_drain() -> None:
    bus = EventBus()
    received: list[str] = []

    async def on_event(event: WorkflowEvent) -> None:
        received.append(event.event_type.value)

    async def broken(event: WorkflowEvent) -> None:
        raise ValueError("async failure")

    bus.subscribe(None, on_event)
    bus.subscribe(EventType.GATE_EVALUATED, broken)
    bus.emit(EventType.PHASE_STARTED, _RUN_A)
    bus.emit(EventType.GATE_EVALUATED, _RUN_A)

    errors = await bus.drain_async()

    assert received == ["PhaseStarted", "GateEvaluated"]
    assert [error.error_type for error in errors] == ["ValueError"]


def test_replay_is_bounded_and_filterable() -> None:
    bus = EventBus(buffer_size=3)
    for index in range(5):
        run_id = _RUN_A if index % 2 == 0 else _RUN_B
        bus.emit(EventType.FINDING_RECORDED, run_id, {"index": index})

    assert [event.payload["index"] for event in bus.replay()] == [2, 3, 4]
    assert [event.payload["index"] for event in bus.replay(run_id=_RUN_A)] == [2, 4]
    assert [event.payload["index"] for event in bus.replay(limit=1)] == [4]
    assert bus.replay(limit=0) == ()
    assert bus.replay(event_type="RunStarted") == ()


def test_invalid_arguments_are_rejected() -> None:
    with pytest.raises(ValueError, match="buffer_size must be > 0"):
        EventBus(buffer_size=0)
    bus = EventBus()
    with pytest.raises(ValueError, match="callback must be callable"):
        bus.subscribe(None, "not callable")  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="invalid event_type"):
        bus.emit("Exploded", _RUN_A)
