"""
phase-orchestrator — in-process event bus.

Purpose
- Fan lifecycle events (``RunStarted``, ``TaskDispatched``, ``GateEvaluated``, ...)
  out to observers and keep the most recent ones for replay.

Functional requirements
- Delivery order is subscription order; replay order is publish order.
- An observer that raises is recorded as a :class:`DispatchError` and never
  reaches the engine that emitted the event.
- Coroutine observers run on the current loop and are awaited by
  :meth:`EventBus.drain_async`; without a loop they are run to completion inline.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final

from phase_orchestrator.domain.events import EventType, WorkflowEvent
from phase_orchestrator.domain.models import JSONValue

Subscriber = Callable[[WorkflowEvent], object]

_MAX_RECORDED_ERRORS: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """An observer failure, kept for inspection instead of being raised."""

    event_id: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(
        cls, event: WorkflowEvent, callback: Subscriber, exc: BaseException
    ) -> DispatchError:
        name = getattr(callback, "__name__", None)
        return cls(
            event_id=event.event_id,
            target=name if isinstance(name, str) and name else type(callback).__name__,
            error_type=type(exc).__name__,
            message=str(exc),
        )


@dataclass(frozen=True, slots=True)
class _Subscription:
    callback: Subscriber
    event_type: EventType | None
    run_id: str | None

    def wants(self, event: WorkflowEvent) -> bool:
        return _matches(event, self.event_type, self.run_id)


class EventBus:
    """Synchronous fan-out with a bounded replay buffer."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._history: deque[WorkflowEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_MAX_RECORDED_ERRORS)
        self._subscriptions: dict[int, _Subscription] = {}
        self._in_flight: set[asyncio.Task[None]] = set()
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(
        self,
        event_type: str | EventType | None,
        callback: Subscriber,
        *,
        run_id: str | None = None,
    ) -> int:
        """Observe one event type (every type when ``None``), optionally for one run only.

        Returns a token for :meth:`unsubscribe`.
        """
        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscriptions[token] = _Subscription(callback, wanted, run_id)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def emit(
        self,
        event_type: str | EventType,
        run_id: str,
        payload: Mapping[str, JSONValue] | None = None,
    ) -> WorkflowEvent:
        """Build an event envelope, publish it, and return it."""
        event = WorkflowEvent.create(_event_type(event_type), run_id, dict(payload or {}))
        self.publish(event)
        return event

    def publish(self, event: WorkflowEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, WorkflowEvent):
            raise ValueError(f"event must be WorkflowEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            targets = [sub for sub in self._subscriptions.values() if sub.wants(event)]

        failures = [
            failure
            for failure in (self._deliver(sub.callback, event) for sub in targets)
            if failure is not None
        ]
        if failures:
            with self._lock:
                self._errors.extend(failures)
        return tuple(failures)

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Wait for coroutine observers started by :meth:`publish`; return all recorded errors."""
        while True:
            with self._lock:
                pending = list(self._in_flight)
            if not pending:
                break
            await asyncio.wait(pending)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        run_id: str | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[WorkflowEvent, ...]:
        """Buffered events in publish order; ``limit`` keeps the most recent ones."""
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise ValueError(f"limit must be an integer, got {type(limit).__name__}")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            selected = [event for event in self._history if _matches(event, wanted, run_id)]
        if limit is None:
            return tuple(selected)
        return tuple(selected[-limit:]) if limit > 0 else ()

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _deliver(self, callback: Subscriber, event: WorkflowEvent) -> DispatchError | None:
        try:
            outcome = callback(event)
            if not inspect.iscoroutine(outcome):
                return None
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(outcome)
                return None
            task = loop.create_task(outcome)
        except Exception as exc:  # noqa: BLE001 - observers never break the publisher
            return DispatchError.capture(event, callback, exc)

        with self._lock:
            self._in_flight.add(task)
        task.add_done_callback(lambda done: self._settle(done, event, callback))
        return None

    def _settle(
        self, task: asyncio.Task[None], event: WorkflowEvent, callback: Subscriber
    ) -> None:
        with self._lock:
            self._in_flight.discard(task)
            if not task.cancelled() and isinstance(task.exception(), Exception):
                self._errors.append(DispatchError.capture(event, callback, task.exception()))


def _matches(event: WorkflowEvent, event_type: EventType | None, run_id: str | None) -> bool:
    if run_id is not None and run_id != event.run_id:
        return False
    return event_type is None or event_type is event.event_type


def _event_type(value: str | EventType) -> EventType:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(str(value).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in EventType)
        raise ValueError(f"invalid event_type {value!r}; allowed: {allowed}") from exc


__all__ = ["DispatchError", "EventBus", "Subscriber"]
