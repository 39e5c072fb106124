"""Unit tests for worker invocation and result coercion."""

from __future__ import annotations

import asyncio
import threading

import pytest

from phase_orchestrator.capabilities.workers import (
    SpecialistWorker,
    TaskInput,
    WorkerResult,
    coerce_result,
    invoke_worker,
)
from phase_orchestrator.domain.errors import WorkerInvocationError
from phase_orchestrator.domain.models import Severity, WorkerStatus


def _input(**overrides: object) -> TaskInput:
    values: dict[str, object] = {
        "run_id": "run-01J00000000000000000000000",
        "task_id": "t02-review",
        "capability": "review",
        "phase": "review",
        "attempt": 1,
    }
    values.update(overrides)
    return TaskInput(**values)  # type: ignore[arg-type]


def test_coerce_result_accepts_mapping_with_findings() -> None:
    result = coerce_result(
        {
            "status": "success",
            "artifact": {"verdict": "changes requested"},
            "findings": [
                {
                    "severity": "high",
                    "description": "unchecked error",
                    "targetCapability": "develop",
                }
            ],
        },
        "t02-review",
    )
    assert result.status is WorkerStatus.SUCCESS
    assert result.findings[0].severity is Severity.HIGH
    assert result.findings[0].target_capability == "develop"


def test_coerce_result_failure_message_aliases() -> None:
    result = coerce_result({"status": "failure", "error": "lint crashed"}, "t02-review")
    assert not result.succeeded
    assert result.error_message == "lint crashed"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("done", "worker returned str"),
        ({"status": "success", "extra": 1}, "unexpected fields"),
        ({"status": "maybe"}, "malformed result"),
        ({"artifact": {"when": object()}}, "malformed result"),
        ({"findings": {"severity": "low"}}, "findings: expected array"),
        ({"status": "failure", "error": 7}, "error message must be a string"),
    ],
)
def test_coerce_result_rejects_malformed_values(raw: object, message: str) -> None:
    with pytest.raises(WorkerInvocationError, match=message) as error:
        coerce_result(raw, "t02-review")
    assert error.value.task_id == "t02-review"
    assert error.value.kind == "WorkerInvocationError"


async def test_invoke_worker_awaits_async_invoke_method() -> None:
    class ReviewWorker:
        async def invoke(self, task_input: TaskInput) -> WorkerResult:
            return WorkerResult.success({"reviewed": task_input.task_id})

    worker = ReviewWorker()
    assert isinstance(worker, SpecialistWorker)
    result = await invoke_worker(worker, _input())
    assert result.artifact == {"reviewed": "t02-review"}


async def test_invoke_worker_runs_sync_callables_off_the_loop_thread() -> None:
    seen: list[int] = []

    def sync_worker(task_input: TaskInput) -> dict[str, object]:
        seen.append(threading.get_ident())
        return {"artifact": task_input.attempt}

    result = await invoke_worker(sync_worker, _input(attempt=2))

    assert result.artifact == 2
    assert seen and seen[0] != threading.get_ident()


async def test_invoke_worker_wraps_worker_exceptions() -> None:
    async def broken(task_input: TaskInput) -> WorkerResult:
        raise RuntimeError("boom")

    with pytest.raises(WorkerInvocationError, match="worker raised RuntimeError: boom"):
        await invoke_worker(broken, _input())


async def test_cancelled_sync_worker_stays_tracked_until_its_thread_returns() -> None:
    release = threading.Event()

    def stuck_worker(task_input: TaskInput) -> dict[str, object]:
        release.wait(5)
        return {"artifact": None}

    threads: set[asyncio.Future[object]] = set()
    caller = asyncio.create_task(invoke_worker(stuck_worker, _input(), threads=threads))
    for _ in range(100):
        if threads:
            break
        await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    (thread,) = threads
    assert not thread.done()

    release.set()
    await asyncio.wait_for(asyncio.wait({thread}), timeout=5)
    assert threads == set()


def test_task_input_artifact_for_prefers_latest_dependency() -> None:
    task_input = _input(
        dependency_artifacts={"t01-develop": {"v": 1}, "t03-develop": {"v": 2}},
        dependency_capabilities={"t01-develop": "develop", "t03-develop": "develop"},
    )
    assert task_input.artifact_for("develop") == {"v": 2}
    assert task_input.artifact_for("design") is None
    assert task_input.to_dict()["remediation_findings"] == []
