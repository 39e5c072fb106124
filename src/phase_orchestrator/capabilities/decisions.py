"""Out-of-band human decisions modelled as an ordinary capability.

A decision capability's worker suspends until :meth:`DecisionBroker.resolve`
(or :meth:`DecisionBroker.reject`) is called for its key, possibly from another
thread. The scheduler treats it like any other task; the capability timeout
bounds how long the run waits.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from phase_orchestrator.capabilities.registry import CapabilityDescriptor
from phase_orchestrator.capabilities.workers import TaskInput, WorkerResult
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import IdempotencyClass, JSONValue, as_json_value
from phase_orchestrator.observability.events import EventBus


@dataclass(frozen=True, slots=True)
class DecisionRequest:
    """A pending question awaiting an out-of-band answer."""

    key: str
    run_id: str
    task_id: str
    capability: str
    prompt: JSONValue


@dataclass(frozen=True, slots=True)
class _Answer:
    approved: bool
    value: JSONValue
    reason: str | None = None


class DecisionBroker:
    """Rendezvous between suspended decision tasks and whoever answers them."""

    def __init__(self, *, event_bus: EventBus | None = None, logger: Any | None = None) -> None:
        self._lock = threading.Lock()
        self._waiters: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Future[_Answer]]] = {}
        self._requests: dict[str, DecisionRequest] = {}
        self._early_answers: dict[str, _Answer] = {}
        self._event_bus = event_bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @staticmethod
    def key_for(run_id: str, task_id: str) -> str:
        return f"{run_id}/{task_id}"

    def descriptor(
        self,
        name: str,
        *,
        phase: str = "design",
        timeout_seconds: float | None = None,
        output_schema: Mapping[str, Any] | None = None,
    ) -> CapabilityDescriptor:
        """Descriptor for a decision capability backed by this broker.

        Decisions are non-retriable: re-asking a human is not idempotent.
        """
        return CapabilityDescriptor(
            name=name,
            worker=_DecisionWorker(self),
            output_schema=output_schema,
            concurrency_safe=True,
            idempotency=IdempotencyClass.NON_RETRIABLE,
            phase=phase,
            timeout_seconds=timeout_seconds,
        )

    def pending(self) -> tuple[DecisionRequest, ...]:
        with self._lock:
            return tuple(self._requests[key] for key in sorted(self._requests))

    def resolve(self, key: str, value: object = None) -> bool:
        """Answer ``key`` with ``value``. Returns ``True`` if a task was waiting."""
        answer = _Answer(approved=True, value=as_json_value(value, "decision"))
        return self._deliver(key, answer)

    def reject(self, key: str, reason: str) -> bool:
        """Decline ``key``; the waiting task fails with ``reason``."""
        return self._deliver(key, _Answer(approved=False, value=None, reason=reason))

    async def request(self, task_input: TaskInput) -> WorkerResult:
        key = self.key_for(task_input.run_id, task_input.task_id)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[_Answer] = loop.create_future()
        request = DecisionRequest(
            key=key,
            run_id=task_input.run_id,
            task_id=task_input.task_id,
            capability=task_input.capability,
            prompt=as_json_value(dict(task_input.payload), "prompt"),
        )

        with self._lock:
            early = self._early_answers.pop(key, None)
            if early is None:
                self._waiters[key] = (loop, future)
                self._requests[key] = request
        if early is not None:
            future.set_result(early)
        else:
            self._logger.info("decision_requested", key=key, capability=task_input.capability)
            self._emit(EventType.DECISION_REQUESTED, request, {})

        try:
            answer = await future
        finally:
            with self._lock:
                self._waiters.pop(key, None)
                self._requests.pop(key, None)

        self._emit(
            EventType.DECISION_RESOLVED,
            request,
            {"approved": answer.approved, "reason": answer.reason},
        )
        if not answer.approved:
            return WorkerResult.failure(answer.reason or "decision rejected")
        return WorkerResult.success({"decision": answer.value})

    def _deliver(self, key: str, answer: _Answer) -> bool:
        with self._lock:
            waiter = self._waiters.pop(key, None)
            if waiter is None:
                self._early_answers[key] = answer
                return False
        loop, future = waiter
        loop.call_soon_threadsafe(_set_if_pending, future, answer)
        self._logger.info("decision_resolved", key=key, approved=answer.approved)
        return True

    def _emit(
        self, event_type: EventType, request: DecisionRequest, extra: dict[str, JSONValue]
    ) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            event_type,
            request.run_id,
            {
                "key": request.key,
                "task_id": request.task_id,
                "capability": request.capability,
                **extra,
            },
        )


class _DecisionWorker:
    __slots__ = ("_broker",)

    def __init__(self, broker: DecisionBroker) -> None:
        self._broker = broker

    async def invoke(self, task_input: TaskInput) -> WorkerResult:
        return await self._broker.request(task_input)


def _set_if_pending(future: asyncio.Future[_Answer], answer: _Answer) -> None:
    if not future.done():
        future.set_result(answer)


__all__ = ["DecisionBroker", "DecisionRequest"]
