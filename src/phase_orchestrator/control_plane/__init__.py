"""Control plane: scheduling, retry policy, budgets, and the engine facade."""

from phase_orchestrator.control_plane.budgets import (
    BudgetAction,
    BudgetDecision,
    RetryBudgetLedger,
)
from phase_orchestrator.control_plane.engine import Engine, GoalSource
from phase_orchestrator.control_plane.retry import ReconcileOutcome, RetryController
from phase_orchestrator.control_plane.scheduler import RunSnapshot, Scheduler, SchedulerSettings

__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "Engine",
    "GoalSource",
    "ReconcileOutcome",
    "RetryBudgetLedger",
    "RetryController",
    "RunSnapshot",
    "Scheduler",
    "SchedulerSettings",
]
