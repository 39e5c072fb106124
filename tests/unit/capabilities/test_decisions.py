"""Unit tests for out-of-band decisions."""

from __future__ import annotations

import asyncio
import threading

from phase_orchestrator.capabilities.decisions import DecisionBroker
from phase_orchestrator.capabilities.workers import TaskInput, invoke_worker
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import IdempotencyClass
from phase_orchestrator.observability.events import EventBus

_RUN_ID = "run-01J00000000000000000000000"


def _input(task_id: str = "t01-approve") -> TaskInput:
    return TaskInput(
        run_id=_RUN_ID,
        task_id=task_id,
        capability="approve",
        phase="design",
        attempt=1,
        payload={"question": "ship it?"},
    )


def test_descriptor_is_non_retriable() -> None:
    descriptor = DecisionBroker().descriptor("approve", timeout_seconds=30)
    assert descriptor.idempotency is IdempotencyClass.NON_RETRIABLE
    assert descriptor.phase == "design"
    assert descriptor.timeout_seconds == 30.0


async def test_request_suspends_until_resolved_from_another_thread() -> None:
    bus = EventBus()
    broker = DecisionBroker(event_bus=bus)
    worker = broker.descriptor("approve").worker

    pending = asyncio.create_task(invoke_worker(worker, _input()))
    for _ in range(100):
        if broker.pending():
            break
        await asyncio.sleep(0.01)

    (request,) = broker.pending()
    assert request.key == f"{_RUN_ID}/t01-approve"
    assert request.prompt == {"question": "ship it?"}
    assert not pending.done()

    resolver = threading.Thread(target=broker.resolve, args=(request.key, {"approved_by": "ops"}))
    resolver.start()
    resolver.join()
    result = await asyncio.wait_for(pending, timeout=2)

    assert result.succeeded
    assert result.artifact == {"decision": {"approved_by": "ops"}}
    assert broker.pending() == ()
    event_types = [event.event_type for event in bus.replay(run_id=_RUN_ID)]
    assert event_types == [EventType.DECISION_REQUESTED, EventType.DECISION_RESOLVED]


async def test_rejection_becomes_worker_failure() -> None:
    broker = DecisionBroker()
    worker = broker.descriptor("approve").worker
    key = DecisionBroker.key_for(_RUN_ID, "t01-approve")

    assert broker.reject(key, "not before the freeze") is False
    result = await invoke_worker(worker, _input())

    assert not result.succeeded
    assert result.error_message == "not before the freeze"


async def test_early_answer_is_delivered_without_waiting() -> None:
    broker = DecisionBroker()
    worker = broker.descriptor("approve").worker
    key = DecisionBroker.key_for(_RUN_ID, "t02-approve")

    assert broker.resolve(key, "yes") is False
    result = await asyncio.wait_for(invoke_worker(worker, _input("t02-approve")), timeout=2)

    assert result.artifact == {"decision": "yes"}
