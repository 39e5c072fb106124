"""
phase-orchestrator — phase-gated capability workflow engine.

Purpose
- Decompose a goal into a task graph of capability work, run it phase by phase
  through specialist workers, gate every phase on worker findings, remediate
  failed gates within a bounded retry budget, and synthesize one deliverable.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from phase_orchestrator.capabilities import (
    CapabilityDescriptor,
    CapabilityRegistry,
    DecisionBroker,
    TaskInput,
    WorkerResult,
)
from phase_orchestrator.control_plane import Engine, RunSnapshot, Scheduler, SchedulerSettings
from phase_orchestrator.domain import (
    Deliverable,
    Finding,
    FindingReport,
    GoalDescriptor,
    IdempotencyClass,
    RunStatus,
    Severity,
    TaskStatus,
    WorkflowRun,
)
from phase_orchestrator.planning import TaskGraphBuilder, load_goal
from phase_orchestrator.synthesis_plane import ResultSynthesizer
from phase_orchestrator.verification_plane import QualityGateEvaluator

__version__ = "0.1.0"

__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "DecisionBroker",
    "Deliverable",
    "Engine",
    "Finding",
    "FindingReport",
    "GoalDescriptor",
    "IdempotencyClass",
    "QualityGateEvaluator",
    "ResultSynthesizer",
    "RunSnapshot",
    "RunStatus",
    "Scheduler",
    "SchedulerSettings",
    "Severity",
    "TaskGraphBuilder",
    "TaskInput",
    "TaskStatus",
    "WorkerResult",
    "WorkflowRun",
    "__version__",
    "load_goal",
]
