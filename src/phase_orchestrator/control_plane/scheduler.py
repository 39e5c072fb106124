"""
phase-orchestrator — phase-ordered scheduler/executor.

Purpose
- Drive a planned ``WorkflowRun`` to a terminal status: dispatch ready tasks
  to their workers, hold the phase barrier, evaluate each phase gate, and hand
  failed gates to the retry controller.

Functional requirements
- Ready set: pending tasks of the active phase whose dependencies are all
  completed, in sequence order.
- Selection is pure sequence order; concurrency-safe tasks are not preferred
  over earlier ones, so the same run always dispatches in the same order.
- At most ``max_concurrency`` tasks in flight; capabilities that are not
  concurrency safe never have two tasks in flight at once. A timed-out
  synchronous worker keeps its capability busy until its thread returns.
- Worker outcomes map onto ``completed`` or ``failed`` with an error kind; every
  failure also records an engine-generated critical finding.
- A non-retriable failure blocks its transitive dependents at once, lets
  in-flight tasks finish, records the phase gate, then fails the run.
- A phase whose gate passes while one of its tasks is still ``failed`` fails
  the run with ``task_failed``; that task's findings stay unresolved.
- Abort stops new dispatch, lets in-flight tasks finish, and ends ``aborted``.

Non-functional requirements
- Every run mutation happens under one lock; ``snapshot`` copies under it.
- Per-task failures never escape as exceptions.
"""

from __future__ import annotations

import asyncio
import math
import threading
from collections.abc import Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import structlog

from phase_orchestrator.capabilities.workers import TaskInput, WorkerResult, invoke_worker
from phase_orchestrator.constants import DEFAULT_MAX_CONCURRENCY, DEFAULT_TASK_TIMEOUT_SECONDS
from phase_orchestrator.control_plane.lifecycle import (
    block_dependents,
    failed_current_tasks,
    record_event,
)
from phase_orchestrator.control_plane.retry import REMEDIATION_PAYLOAD_KEY, RetryController
from phase_orchestrator.domain.errors import TaskTimeout, WorkerInvocationError
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Finding,
    FindingReport,
    Gate,
    RunStatus,
    Severity,
    Task,
    TaskResult,
    TaskStatus,
    WorkerStatus,
    WorkflowRun,
)
from phase_orchestrator.observability.logging import correlation_scope
from phase_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    run_with_timeout,
)
from phase_orchestrator.verification_plane.quality_gate import QualityGateEvaluator

if TYPE_CHECKING:
    from phase_orchestrator.capabilities.registry import CapabilityDescriptor, CapabilityRegistry
    from phase_orchestrator.observability.events import EventBus

WORKER_REPORTED_FAILURE: Final[str] = "WorkerReportedFailure"
UNRECOVERABLE_TASK_FAILURE: Final[str] = "unrecoverable_task_failure"
TASK_FAILED: Final[str] = "task_failed"

_DISPATCHABLE = frozenset({TaskStatus.PENDING, TaskStatus.READY})


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Dispatch limits for one scheduler."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    default_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_concurrency, bool) or not isinstance(self.max_concurrency, int):
            raise ValueError("max_concurrency must be an integer")
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        timeout = self.default_timeout_seconds
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ValueError("default_timeout_seconds must be numeric")
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("default_timeout_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    """Side-effect free, point-in-time copy of a run plus per-status task counts."""

    run: WorkflowRun
    status_counts: Mapping[str, int] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def current_phase(self) -> str | None:
        return self.run.current_phase

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run.id,
            "status": self.run.status.value,
            "current_phase": self.run.current_phase,
            "retry_budget_remaining": self.run.retry_budget_remaining,
            "cycles_executed": self.run.cycles_executed,
            "status_counts": dict(self.status_counts),
        }


class Scheduler:
    """Runs one workflow at a time through its phases."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        settings: SchedulerSettings | None = None,
        gate_evaluator: QualityGateEvaluator | None = None,
        retry_controller: RetryController | None = None,
        event_bus: EventBus | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings if settings is not None else SchedulerSettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._event_bus = event_bus
        self._gates = gate_evaluator if gate_evaluator is not None else QualityGateEvaluator(
            logger=self._logger
        )
        self._retry = retry_controller if retry_controller is not None else RetryController(
            event_bus=event_bus, logger=self._logger
        )
        self._cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self._lock = threading.RLock()
        self._semaphore: BoundedSemaphore | None = None
        self._run: WorkflowRun | None = None
        self._unrecoverable: list[str] = []
        # Worker threads of unsafe capabilities, kept until the thread returns.
        self._worker_threads: dict[str, set[asyncio.Future[Any]]] = {}
        self._running = False

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def semaphore(self) -> BoundedSemaphore | None:
        """Permit pool of the current or most recent run."""
        return self._semaphore

    def abort(self, reason: str = "aborted") -> None:
        """Request cooperative cancellation; safe to call from any thread."""
        self._cancel_token.cancel(reason)

    def snapshot(self) -> RunSnapshot | None:
        with self._lock:
            if self._run is None:
                return None
            return RunSnapshot(run=self._run.snapshot(), status_counts=self._run.status_counts())

    async def run(self, run: WorkflowRun) -> WorkflowRun:
        """Execute ``run`` until it is terminal and return it."""
        if run.is_terminal:
            raise ValueError(f"run {run.id} is already terminal ({run.status.value})")
        if self._running:
            raise RuntimeError("scheduler is already executing a run")

        self._running = True
        self._unrecoverable = []
        self._semaphore = BoundedSemaphore(self._settings.max_concurrency)
        with self._lock:
            self._run = run
            run.status = RunStatus.RUNNING
            record_event(
                run,
                self._event_bus,
                EventType.RUN_STARTED,
                run.id,
                detail={"phases": list(run.phases), "tasks": len(run.tasks)},
            )
        self._logger.info(
            "scheduler_run_started",
            run_id=run.id,
            phases=list(run.phases),
            max_concurrency=self._settings.max_concurrency,
        )

        try:
            with correlation_scope(run_id=run.id):
                for phase in run.phases:
                    if self._should_stop(run):
                        break
                    with self._lock:
                        run.current_phase = phase
                        record_event(
                            run, self._event_bus, EventType.PHASE_STARTED, phase, phase=phase
                        )
                    await self._run_phase(run, phase)
                self._finish(run)
        finally:
            self._running = False
        if self._event_bus is not None:
            await self._event_bus.drain_async()
        return run

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    def _should_stop(self, run: WorkflowRun) -> bool:
        return run.is_terminal or self._cancel_token.is_cancelled or bool(self._unrecoverable)

    async def _run_phase(self, run: WorkflowRun, phase: str) -> None:
        while True:
            await self._drain_phase(run, phase)
            if self._cancel_token.is_cancelled:
                return

            with self._lock:
                gate = self._evaluate_gate(run, phase)
                if self._unrecoverable:
                    return
                if gate.passed:
                    failed = failed_current_tasks(run)
                    if failed:
                        self._fail_with_failed_tasks(run, phase, failed)
                        return
                    record_event(
                        run,
                        self._event_bus,
                        EventType.PHASE_SETTLED,
                        phase,
                        phase=phase,
                        detail={"gate_cycle": gate.cycle},
                    )
                    self._logger.info("scheduler_phase_settled", run_id=run.id, phase=phase)
                    return
                self._retry.reconcile(run, gate)
                if run.is_terminal:
                    return

    def _fail_with_failed_tasks(
        self, run: WorkflowRun, phase: str, failed: tuple[str, ...]
    ) -> None:
        """A passing gate cannot settle a phase that still holds a failed task."""
        wanted = {finding.id for task_id in failed for finding in run.task(task_id).findings}
        run.status = RunStatus.FAILED
        run.failure_reason = TASK_FAILED
        run.unresolved_findings = tuple(
            finding for finding in run.finding_history if finding.id in wanted
        )
        block_dependents(run, failed, reason=TASK_FAILED, event_bus=self._event_bus)
        self._logger.warning(
            "scheduler_phase_failed",
            run_id=run.id,
            phase=phase,
            failure_reason=TASK_FAILED,
            failed_tasks=list(failed),
        )

    async def _drain_phase(self, run: WorkflowRun, phase: str) -> None:
        """Dispatch ready tasks until nothing is ready and nothing is in flight."""
        in_flight: dict[asyncio.Task[None], Task] = {}
        cancel_wait = asyncio.create_task(self._cancel_token.wait())
        try:
            while True:
                held: set[asyncio.Future[Any]] = set()
                if not self._cancel_token.is_cancelled and not self._unrecoverable:
                    for task, descriptor in self._select_ready(run, phase, in_flight.values()):
                        handle = asyncio.create_task(
                            self._execute(run, task, descriptor), name=f"task:{task.id}"
                        )
                        in_flight[handle] = task
                    held = self._threads_holding_back(run, phase)
                if not in_flight and not held:
                    return
                waiting: set[asyncio.Future[Any]] = set(in_flight) | held
                if not cancel_wait.done():
                    waiting.add(cancel_wait)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                for handle in [handle for handle in in_flight if handle in done]:
                    in_flight.pop(handle)
                    handle.result()
        finally:
            cancel_wait.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait

    def _select_ready(
        self,
        run: WorkflowRun,
        phase: str,
        in_flight: Iterable[Task],
    ) -> list[tuple[Task, CapabilityDescriptor]]:
        in_flight = tuple(in_flight)
        slots = self._settings.max_concurrency - len(in_flight)
        if slots <= 0:
            return []
        busy_unsafe = {
            task.capability
            for task in in_flight
            if not self._registry.resolve(task.capability).concurrency_safe
        }
        busy_unsafe.update(name for name, threads in self._worker_threads.items() if threads)
        selected: list[tuple[Task, CapabilityDescriptor]] = []
        with self._lock:
            completed = {task.id for task in run.tasks if task.status is TaskStatus.COMPLETED}
            candidates = sorted(run.tasks_in_phase(phase), key=lambda item: item.sequence)
            for task in candidates:
                if len(selected) >= slots:
                    break
                if task.status not in _DISPATCHABLE or not task.is_current:
                    continue
                if not all(dependency in completed for dependency in task.dependencies):
                    continue
                if task.status is TaskStatus.PENDING:
                    task.status = TaskStatus.READY
                    record_event(run, self._event_bus, EventType.TASK_READY, task.id, phase=phase)
                descriptor = self._registry.resolve(task.capability)
                if not descriptor.concurrency_safe:
                    if descriptor.name in busy_unsafe:
                        continue
                    busy_unsafe.add(descriptor.name)
                # Claimed here so the next selection pass cannot pick it again.
                task.status = TaskStatus.DISPATCHED
                selected.append((task, descriptor))
        return selected

    def _threads_holding_back(self, run: WorkflowRun, phase: str) -> set[asyncio.Future[Any]]:
        """Lingering worker threads whose capability a ready task of ``phase`` still needs."""
        with self._lock:
            waiting = {
                task.capability
                for task in run.tasks_in_phase(phase)
                if task.status is TaskStatus.READY and task.is_current
            }
        return {
            thread
            for capability in waiting
            for thread in self._worker_threads.get(capability, ())
        }

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def _execute(
        self, run: WorkflowRun, task: Task, descriptor: CapabilityDescriptor
    ) -> None:
        semaphore = self._semaphore
        if semaphore is None:
            raise RuntimeError("scheduler has no active run")
        async with semaphore.permit():
            with self._lock:
                task.attempts += 1
                task.findings = ()
                task.result = None
                task.error_kind = None
                task_input = self._build_input(run, task)
                record_event(
                    run,
                    self._event_bus,
                    EventType.TASK_DISPATCHED,
                    task.id,
                    phase=task.phase,
                    detail={"capability": task.capability, "attempt": task.attempts},
                )
            self._logger.info(
                "scheduler_task_dispatched",
                run_id=run.id,
                task_id=task.id,
                capability=task.capability,
                phase=task.phase,
                attempt=task.attempts,
            )
            timeout = descriptor.timeout_seconds or self._settings.default_timeout_seconds
            with correlation_scope(task_id=task.id, phase=task.phase, capability=task.capability):
                result, error_kind = await self._invoke(descriptor, task_input, timeout)
            with self._lock:
                self._settle(run, task, descriptor, result, error_kind)

    async def _invoke(
        self,
        descriptor: CapabilityDescriptor,
        task_input: TaskInput,
        timeout: float,
    ) -> tuple[WorkerResult, str | None]:
        task_id = task_input.task_id
        try:
            input_errors = descriptor.input_errors(task_input.to_dict())
            if input_errors:
                raise WorkerInvocationError(
                    task_id, f"input schema violation: {'; '.join(input_errors)}"
                )
            threads = (
                None
                if descriptor.concurrency_safe
                else self._worker_threads.setdefault(descriptor.name, set())
            )
            result = await run_with_timeout(
                invoke_worker(descriptor.worker, task_input, threads=threads), timeout
            )
            if result.succeeded:
                output_errors = descriptor.output_errors(result.artifact)
                if output_errors:
                    raise WorkerInvocationError(
                        task_id, f"output schema violation: {'; '.join(output_errors)}"
                    )
        except TimeoutError:
            error = TaskTimeout(task_id, timeout)
            return WorkerResult.failure(str(error)), error.kind
        except WorkerInvocationError as exc:
            return WorkerResult.failure(str(exc)), exc.kind
        if result.succeeded:
            return result, None
        message = result.error_message or "worker reported failure"
        return WorkerResult.failure(message, result.findings), WORKER_REPORTED_FAILURE

    def _settle(
        self,
        run: WorkflowRun,
        task: Task,
        descriptor: CapabilityDescriptor,
        result: WorkerResult,
        error_kind: str | None,
    ) -> None:
        findings = [self._stamp(run, task, report) for report in result.findings]
        if error_kind is None:
            task.status = TaskStatus.COMPLETED
            task.result = TaskResult(status=WorkerStatus.SUCCESS, artifact=result.artifact)
            task.findings = tuple(findings)
            record_event(
                run,
                self._event_bus,
                EventType.TASK_COMPLETED,
                task.id,
                phase=task.phase,
                detail={"findings": [finding.id for finding in findings]},
            )
            self._logger.info(
                "scheduler_task_completed",
                run_id=run.id,
                task_id=task.id,
                findings=len(findings),
            )
            return

        message = result.error_message or error_kind
        findings.append(
            self._stamp(
                run,
                task,
                FindingReport(
                    severity=Severity.CRITICAL,
                    description=f"{error_kind}: {message}",
                    remediation_hint="re-run the task once the failure cause is addressed",
                ),
            )
        )
        task.status = TaskStatus.FAILED
        task.error_kind = error_kind
        task.result = TaskResult(
            status=WorkerStatus.FAILURE, error_kind=error_kind, error_message=message
        )
        task.findings = tuple(findings)
        record_event(
            run,
            self._event_bus,
            EventType.TASK_FAILED,
            task.id,
            phase=task.phase,
            detail={
                "error_kind": error_kind,
                "retriable": descriptor.retriable,
                "findings": [finding.id for finding in findings],
            },
        )
        self._logger.warning(
            "scheduler_task_failed",
            run_id=run.id,
            task_id=task.id,
            error_kind=error_kind,
            error_message=message,
            retriable=descriptor.retriable,
        )
        if not descriptor.retriable:
            self._unrecoverable.append(task.id)
            block_dependents(
                run, (task.id,), reason=UNRECOVERABLE_TASK_FAILURE, event_bus=self._event_bus
            )

    def _stamp(self, run: WorkflowRun, task: Task, report: FindingReport) -> Finding:
        finding = Finding(
            id=run.next_finding_id(),
            severity=report.severity,
            task_id=task.id,
            capability=task.capability,
            phase=task.phase,
            description=report.description,
            remediation_hint=report.remediation_hint,
            target_task_id=self._resolve_target(run, task, report.target_capability),
            attempt=task.attempts,
        )
        run.finding_history.append(finding)
        record_event(
            run,
            self._event_bus,
            EventType.FINDING_RECORDED,
            finding.id,
            phase=task.phase,
            detail={
                "severity": finding.severity.value,
                "task_id": task.id,
                "target_task_id": finding.subject_task_id,
            },
        )
        return finding

    @staticmethod
    def _resolve_target(run: WorkflowRun, task: Task, capability: str | None) -> str:
        """Latest current task of ``capability`` in this or an earlier phase, else ``task``."""
        if capability is None or capability == task.capability:
            return task.id
        ceiling = run.phase_index(task.phase)
        candidates = [
            candidate
            for candidate in run.tasks
            if candidate.capability == capability
            and candidate.is_current
            and run.phase_index(candidate.phase) <= ceiling
        ]
        if not candidates:
            return task.id
        return max(candidates, key=lambda candidate: candidate.sequence).id

    @staticmethod
    def _build_input(run: WorkflowRun, task: Task) -> TaskInput:
        dependencies = [run.task(dependency) for dependency in task.dependencies]
        remediation = task.payload.get(REMEDIATION_PAYLOAD_KEY)
        finding_ids: set[object] = set()
        if isinstance(remediation, dict) and isinstance(remediation.get("finding_ids"), list):
            finding_ids = set(remediation["finding_ids"])
        return TaskInput(
            run_id=run.id,
            task_id=task.id,
            capability=task.capability,
            phase=task.phase,
            attempt=task.attempts,
            goal_payload=dict(run.goal.payload),
            payload=dict(task.payload),
            dependency_artifacts={
                dependency.id: None if dependency.result is None else dependency.result.artifact
                for dependency in dependencies
            },
            dependency_capabilities={
                dependency.id: dependency.capability for dependency in dependencies
            },
            remediation_findings=tuple(
                finding for finding in run.finding_history if finding.id in finding_ids
            ),
        )

    # ------------------------------------------------------------------
    # Gates and run completion
    # ------------------------------------------------------------------

    def _evaluate_gate(self, run: WorkflowRun, phase: str) -> Gate:
        position = {finding.id: index for index, finding in enumerate(run.finding_history)}
        findings = sorted(
            (
                finding
                for task in run.tasks_in_phase(phase)
                if task.is_current
                for finding in task.findings
            ),
            key=lambda finding: position[finding.id],
        )
        cycle = sum(1 for gate in run.gates if gate.phase == phase)
        gate = self._gates.evaluate(phase, findings, run.gate_thresholds.get(phase), cycle)
        run.gates.append(gate)
        record_event(
            run,
            self._event_bus,
            EventType.GATE_EVALUATED,
            phase,
            phase=phase,
            detail={
                "verdict": gate.verdict.value,
                "cycle": gate.cycle,
                "threshold": None if gate.threshold is None else gate.threshold.value,
                "blocking_finding_ids": [finding.id for finding in gate.blocking_findings],
            },
        )
        return gate

    def _finish(self, run: WorkflowRun) -> None:
        with self._lock:
            if self._cancel_token.is_cancelled and not run.is_terminal:
                run.status = RunStatus.ABORTED
                run.failure_reason = self._cancel_token.reason or "aborted"
                event_type = EventType.RUN_ABORTED
            elif self._unrecoverable and not run.is_terminal:
                run.status = RunStatus.FAILED
                run.failure_reason = UNRECOVERABLE_TASK_FAILURE
                run.unresolved_findings = self._unrecoverable_findings(run)
                event_type = EventType.RUN_FAILED
            elif run.status is RunStatus.FAILED:
                event_type = EventType.RUN_FAILED
            else:
                run.status = RunStatus.SUCCEEDED
                event_type = EventType.RUN_COMPLETED
            record_event(
                run,
                self._event_bus,
                event_type,
                run.id,
                phase=run.current_phase,
                detail={
                    "status": run.status.value,
                    "failure_reason": run.failure_reason,
                    "cycles_executed": run.cycles_executed,
                },
            )
        self._logger.info(
            "scheduler_run_finished",
            run_id=run.id,
            status=run.status.value,
            failure_reason=run.failure_reason,
            cycles_executed=run.cycles_executed,
            peak_in_flight=self._semaphore.peak if self._semaphore is not None else 0,
        )

    def _unrecoverable_findings(self, run: WorkflowRun) -> tuple[Finding, ...]:
        wanted: set[str] = set()
        for task_id in self._unrecoverable:
            wanted.update(finding.id for finding in run.task(task_id).findings)
        last_gate = run.gates[-1] if run.gates else None
        if last_gate is not None and last_gate.phase == run.current_phase:
            wanted.update(finding.id for finding in last_gate.blocking_findings)
        return tuple(finding for finding in run.finding_history if finding.id in wanted)


__all__ = [
    "RunSnapshot",
    "Scheduler",
    "SchedulerSettings",
    "TASK_FAILED",
    "UNRECOVERABLE_TASK_FAILURE",
    "WORKER_REPORTED_FAILURE",
]
