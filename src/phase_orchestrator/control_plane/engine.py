"""
phase-orchestrator — engine facade.

Purpose
- Single entry point that wires config, capability registry, builder,
  scheduler, retry controller, and synthesizer together.

Functional requirements
- ``submit`` plans a goal and returns the run id; structural goal errors raise
  here, before anything is dispatched.
- ``run`` executes a submitted run and always returns a ``Deliverable``.
- ``status`` returns an immutable ``RunSnapshot`` without side effects.
- ``abort`` requests cooperative cancellation of a submitted run.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from phase_orchestrator.capabilities.registry import CapabilityRegistry
from phase_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from phase_orchestrator.control_plane.retry import RetryController
from phase_orchestrator.control_plane.scheduler import RunSnapshot, Scheduler, SchedulerSettings
from phase_orchestrator.domain.models import Deliverable, GoalDescriptor, WorkflowRun
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.planning.builder import TaskGraphBuilder
from phase_orchestrator.planning.goal import load_goal
from phase_orchestrator.synthesis_plane.synthesizer import ResultSynthesizer
from phase_orchestrator.verification_plane.quality_gate import QualityGateEvaluator

GoalSource = GoalDescriptor | Mapping[str, Any] | str | Path


@dataclass(slots=True)
class _RunRecord:
    run: WorkflowRun
    scheduler: Scheduler
    deliverable: Deliverable | None = None


class Engine:
    """Orchestration engine: plan, execute, observe, and abort workflow runs."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        config: Mapping[str, object] | None = None,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = assert_valid_config(merge_config(default_config(), config or {}))
        engine_config = self._config["engine"]
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._registry = registry.with_overrides(self._config.get("capabilities", {}))
        self._event_bus = (
            event_bus
            if event_bus is not None
            else EventBus(buffer_size=self._config["observability"]["event_buffer_size"])
        )
        self._builder = TaskGraphBuilder(
            self._registry,
            phases=engine_config["phases"],
            gate_thresholds=self._config["gates"]["thresholds"],
            retry_budget=engine_config["retry_budget"],
            logger=self._logger,
        )
        self._settings = SchedulerSettings(
            max_concurrency=engine_config["max_concurrency"],
            default_timeout_seconds=engine_config["default_timeout_seconds"],
        )
        self._synthesizer = ResultSynthesizer(logger=self._logger)
        self._lock = threading.RLock()
        self._runs: dict[str, _RunRecord] = {}

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    def plan(self, goal: GoalSource) -> WorkflowRun:
        """Build the run for ``goal`` without registering it for execution."""
        return self._builder.build(_coerce_goal(goal))

    def submit(self, goal: GoalSource) -> str:
        run = self.plan(goal)
        scheduler = Scheduler(
            self._registry,
            settings=self._settings,
            gate_evaluator=QualityGateEvaluator(logger=self._logger),
            retry_controller=RetryController(event_bus=self._event_bus, logger=self._logger),
            event_bus=self._event_bus,
            logger=self._logger,
        )
        with self._lock:
            self._runs[run.id] = _RunRecord(run=run, scheduler=scheduler)
        self._logger.info("engine_run_submitted", run_id=run.id, goal=run.goal.name)
        return run.id

    async def run(self, run_id: str) -> Deliverable:
        record = self._record(run_id)
        if record.deliverable is not None:
            return record.deliverable
        await record.scheduler.run(record.run)
        deliverable = self._synthesizer.synthesize(record.run)
        with self._lock:
            record.deliverable = deliverable
        return deliverable

    async def execute(self, goal: GoalSource) -> Deliverable:
        """``submit`` then ``run`` in one call."""
        return await self.run(self.submit(goal))

    def status(self, run_id: str) -> RunSnapshot:
        record = self._record(run_id)
        snapshot = record.scheduler.snapshot()
        if snapshot is not None:
            return snapshot
        with self._lock:
            return RunSnapshot(run=record.run.snapshot(), status_counts=record.run.status_counts())

    def abort(self, run_id: str, reason: str = "aborted") -> bool:
        """Request cancellation; returns ``False`` when the run already finished."""
        record = self._record(run_id)
        if record.run.is_terminal:
            return False
        record.scheduler.abort(reason)
        self._logger.info("engine_run_abort_requested", run_id=run_id, reason=reason)
        return True

    def deliverable(self, run_id: str) -> Deliverable | None:
        return self._record(run_id).deliverable

    def run_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._runs)

    def _record(self, run_id: str) -> _RunRecord:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None:
            raise KeyError(f"unknown run: {run_id}")
        return record


def _coerce_goal(goal: GoalSource) -> GoalDescriptor:
    if isinstance(goal, GoalDescriptor):
        return goal
    return load_goal(goal)


__all__ = ["Engine", "GoalSource"]
