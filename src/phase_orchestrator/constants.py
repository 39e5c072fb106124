"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
DELIVERABLE_SCHEMA_VERSION: Final[int] = 1
GOAL_SCHEMA_VERSION: Final[int] = 1

# Canonical phase sequence used when a goal does not declare its own.
CANONICAL_PHASES: Final[tuple[str, ...]] = (
    "design",
    "development",
    "review",
    "security",
    "deployment",
)
DEFAULT_CAPABILITY_PHASE: Final[str] = "development"

# Finding severities and weights for deterministic comparison.
SEVERITIES: Final[tuple[str, ...]] = ("low", "medium", "high", "critical")
SEVERITY_WEIGHT: Final[dict[str, int]] = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

# Per-phase gate thresholds; a finding at or above the threshold blocks the gate.
DEFAULT_GATE_THRESHOLDS: Final[dict[str, str]] = {
    "design": "critical",
    "development": "high",
    "review": "high",
    "security": "medium",
    "deployment": "high",
}

DEFAULT_MAX_CONCURRENCY: Final[int] = 4
DEFAULT_TASK_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_RETRY_BUDGET: Final[int] = 2

__all__ = [
    "CANONICAL_PHASES",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CAPABILITY_PHASE",
    "DEFAULT_GATE_THRESHOLDS",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_RETRY_BUDGET",
    "DEFAULT_TASK_TIMEOUT_SECONDS",
    "DELIVERABLE_SCHEMA_VERSION",
    "GOAL_SCHEMA_VERSION",
    "SEVERITIES",
    "SEVERITY_WEIGHT",
]
