"""Smoke checks for the engine's headline guarantees."""

from __future__ import annotations

import asyncio

import pytest

from phase_orchestrator import (
    CapabilityDescriptor,
    CapabilityRegistry,
    Engine,
    FindingReport,
    GoalDescriptor,
    RunStatus,
    Severity,
    TaskInput,
    WorkerResult,
)
from phase_orchestrator.domain.errors import UnknownCapabilityError
from phase_orchestrator.domain.events import EventType


class PausingWorker:
    def __init__(self) -> None:
        self.live = 0
        self.peak = 0
        self.calls = 0

    async def invoke(self, task_input: TaskInput) -> WorkerResult:
        self.calls += 1
        self.live += 1
        self.peak = max(self.peak, self.live)
        try:
            await asyncio.sleep(0.02)
        finally:
            self.live -= 1
        return WorkerResult.success({"task": task_input.task_id})


@pytest.mark.smoke
async def test_concurrency_limit_holds_for_same_phase_capabilities() -> None:
    worker = PausingWorker()
    registry = CapabilityRegistry(
        [
            CapabilityDescriptor(name=name, worker=worker, phase="development")
            for name in ("api", "ui", "docs")
        ]
    )
    engine = Engine(registry, config={"engine": {"max_concurrency": 2}})

    deliverable = await engine.execute(GoalDescriptor(required_capabilities=("api", "ui", "docs")))

    assert deliverable.succeeded
    assert worker.calls == 3
    assert worker.peak == 2


@pytest.mark.smoke
def test_unknown_capability_fails_before_any_dispatch() -> None:
    worker = PausingWorker()
    registry = CapabilityRegistry(
        [CapabilityDescriptor(name="develop", worker=worker, phase="development")]
    )
    engine = Engine(registry)

    with pytest.raises(UnknownCapabilityError) as error:
        engine.submit(GoalDescriptor(required_capabilities=("develop", "fuzz")))

    assert error.value.kind == "UnknownCapabilityError"
    assert engine.run_ids() == ()
    assert engine.event_bus.replay(event_type=EventType.TASK_DISPATCHED) == ()
    assert worker.calls == 0


@pytest.mark.smoke
async def test_review_rejection_is_remediated_once() -> None:
    calls = {"review": 0}

    async def develop(task_input: TaskInput) -> WorkerResult:
        return WorkerResult.success({"attempt": task_input.attempt, "task": task_input.task_id})

    async def review(task_input: TaskInput) -> WorkerResult:
        calls["review"] += 1
        if calls["review"] == 1:
            return WorkerResult.success(
                None,
                [
                    FindingReport(
                        severity=Severity.CRITICAL,
                        description="missing input validation",
                        target_capability="develop",
                    )
                ],
            )
        return WorkerResult.success({"approved": True})

    registry = CapabilityRegistry()
    registry.register_worker("develop", develop, phase="development")
    registry.register_worker("review", review, phase="review")
    engine = Engine(registry, config={"engine": {"retry_budget": 1}})

    deliverable = await engine.execute(
        GoalDescriptor(
            required_capabilities=("develop", "review"),
            dependency_hints=(("develop", "review"),),
        )
    )

    assert deliverable.final_status is RunStatus.SUCCEEDED
    assert deliverable.artifact_sources["develop"] == "t03-develop"
    assert len(deliverable.finding_history) == 1
