"""Specialist worker contract: typed input envelope, result coercion, invocation."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from phase_orchestrator.domain.errors import WorkerInvocationError
from phase_orchestrator.domain.models import (
    Finding,
    FindingReport,
    JSONValue,
    WorkerStatus,
    as_json_value,
)

_RESULT_KEYS = frozenset(
    {"status", "artifact", "findings", "error", "error_message", "errorMessage"}
)


@dataclass(frozen=True, slots=True)
class TaskInput:
    """Everything a worker receives for one task attempt."""

    run_id: str
    task_id: str
    capability: str
    phase: str
    attempt: int
    goal_payload: Mapping[str, JSONValue] = field(default_factory=dict)
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    dependency_artifacts: Mapping[str, JSONValue] = field(default_factory=dict)
    dependency_capabilities: Mapping[str, str] = field(default_factory=dict)
    remediation_findings: tuple[Finding, ...] = ()

    def artifact_for(self, capability: str) -> JSONValue:
        """Artifact of the latest dependency task of ``capability``, or ``None``.

        Dependencies are recorded in task sequence order, so the last match wins.
        """
        matches = [
            task_id
            for task_id, dep_capability in self.dependency_capabilities.items()
            if dep_capability == capability
        ]
        if not matches:
            return None
        return self.dependency_artifacts.get(matches[-1])

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "capability": self.capability,
            "phase": self.phase,
            "attempt": self.attempt,
            "goal_payload": dict(self.goal_payload),
            "payload": dict(self.payload),
            "dependency_artifacts": dict(self.dependency_artifacts),
            "remediation_findings": [finding.to_dict() for finding in self.remediation_findings],
        }


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """What a worker reports back: a status, an artifact, and any findings."""

    status: WorkerStatus
    artifact: JSONValue = None
    findings: tuple[FindingReport, ...] = ()
    error_message: str | None = None

    @classmethod
    def success(
        cls, artifact: JSONValue = None, findings: tuple[FindingReport, ...] | list[Any] = ()
    ) -> WorkerResult:
        return cls(
            status=WorkerStatus.SUCCESS,
            artifact=artifact,
            findings=tuple(
                FindingReport.coerce(item, f"findings[{index}]")
                for index, item in enumerate(findings)
            ),
        )

    @classmethod
    def failure(
        cls, message: str, findings: tuple[FindingReport, ...] | list[Any] = ()
    ) -> WorkerResult:
        return cls(
            status=WorkerStatus.FAILURE,
            error_message=message,
            findings=tuple(
                FindingReport.coerce(item, f"findings[{index}]")
                for index, item in enumerate(findings)
            ),
        )

    @property
    def succeeded(self) -> bool:
        return self.status is WorkerStatus.SUCCESS


@runtime_checkable
class SpecialistWorker(Protocol):
    """Opaque collaborator that performs one capability; sync or async."""

    def invoke(self, task_input: TaskInput) -> WorkerResult | Mapping[str, Any] | Awaitable[Any]:
        ...


WorkerCallable = Callable[[TaskInput], Any]


def coerce_result(raw: object, task_id: str) -> WorkerResult:
    """Validate a worker return value; malformed values raise ``WorkerInvocationError``."""
    if isinstance(raw, WorkerResult):
        try:
            as_json_value(raw.artifact, "artifact")
        except ValueError as exc:
            raise WorkerInvocationError(task_id, f"malformed result: {exc}") from exc
        return raw
    if not isinstance(raw, Mapping):
        raise WorkerInvocationError(
            task_id, f"worker returned {type(raw).__name__}; expected WorkerResult or mapping"
        )

    unknown = sorted(str(key) for key in raw if key not in _RESULT_KEYS)
    if unknown:
        raise WorkerInvocationError(task_id, f"malformed result: unexpected fields {unknown}")

    try:
        status = WorkerStatus(raw.get("status", WorkerStatus.SUCCESS.value))
        artifact = as_json_value(raw.get("artifact"), "artifact")
        raw_findings = raw.get("findings", ())
        if not isinstance(raw_findings, (list, tuple)):
            raise ValueError("findings: expected array")
        findings = tuple(
            FindingReport.coerce(item, f"findings[{index}]")
            for index, item in enumerate(raw_findings)
        )
    except ValueError as exc:
        raise WorkerInvocationError(task_id, f"malformed result: {exc}") from exc

    message = raw.get("error_message", raw.get("errorMessage", raw.get("error")))
    if message is not None and not isinstance(message, str):
        raise WorkerInvocationError(task_id, "malformed result: error message must be a string")
    return WorkerResult(status=status, artifact=artifact, findings=findings, error_message=message)


async def invoke_worker(
    worker: SpecialistWorker | WorkerCallable,
    task_input: TaskInput,
    *,
    threads: set[asyncio.Future[Any]] | None = None,
) -> WorkerResult:
    """Invoke ``worker`` for ``task_input``.

    Coroutine functions are awaited on the loop; synchronous callables run in a
    worker thread so they never block other in-flight tasks. Exceptions raised
    by the worker are wrapped in ``WorkerInvocationError``. Cancellation and
    timeouts propagate unchanged.

    A thread cannot be interrupted, so cancelling the caller leaves it running.
    When ``threads`` is given, the thread's future is added to it and removed
    once the thread has actually returned.
    """
    target = getattr(worker, "invoke", worker)
    if not callable(target):
        raise WorkerInvocationError(task_input.task_id, "worker is not callable")

    try:
        if inspect.iscoroutinefunction(target):
            raw = await target(task_input)
        else:
            thread = asyncio.ensure_future(asyncio.to_thread(target, task_input))
            if threads is not None:
                threads.add(thread)
            thread.add_done_callback(lambda done: _forget_thread(done, threads))
            raw = await asyncio.shield(thread)
            if inspect.isawaitable(raw):
                raw = await raw
    except (asyncio.CancelledError, WorkerInvocationError):
        raise
    except Exception as exc:  # noqa: BLE001
        raise WorkerInvocationError(
            task_input.task_id, f"worker raised {exc.__class__.__name__}: {exc}"
        ) from exc
    return coerce_result(raw, task_input.task_id)


def _forget_thread(
    thread: asyncio.Future[Any], threads: set[asyncio.Future[Any]] | None
) -> None:
    if threads is not None:
        threads.discard(thread)
    # An abandoned thread may still fail; retrieve it so the loop does not warn.
    if not thread.cancelled():
        thread.exception()


__all__ = [
    "SpecialistWorker",
    "TaskInput",
    "WorkerCallable",
    "WorkerResult",
    "coerce_result",
    "invoke_worker",
]
