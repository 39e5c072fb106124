"""Capability registry, specialist worker contract, and the decision broker."""

from phase_orchestrator.capabilities.decisions import DecisionBroker, DecisionRequest
from phase_orchestrator.capabilities.registry import (
    CapabilityDescriptor,
    CapabilityRegistry,
    validate_capability_name,
)
from phase_orchestrator.capabilities.workers import (
    SpecialistWorker,
    TaskInput,
    WorkerCallable,
    WorkerResult,
    coerce_result,
    invoke_worker,
)

__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "DecisionBroker",
    "DecisionRequest",
    "SpecialistWorker",
    "TaskInput",
    "WorkerCallable",
    "WorkerResult",
    "coerce_result",
    "invoke_worker",
    "validate_capability_name",
]
