"""
Retry budget ledger and deterministic control-plane decisions.

The ledger owns the only two mutations of a run's retry accounting:
``retry_budget_remaining`` is decremented by exactly one per remediation cycle
and never restored, and ``cycles_executed`` is incremented alongside it. Every
decision is logged through ``structlog`` as ``control_plane_budget_decision``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from phase_orchestrator.domain.models import Gate, WorkflowRun


class BudgetAction(StrEnum):
    """What the retry controller may do with a failed gate."""

    REMEDIATE = "remediate"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Deterministic budget decision for one failed gate."""

    action: BudgetAction
    run_id: str
    phase: str
    cycle: int
    budget_initial: int
    budget_remaining: int
    blocking_finding_ids: tuple[str, ...]

    @property
    def should_stop(self) -> bool:
        return self.action is BudgetAction.STOP

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "run_id": self.run_id,
            "phase": self.phase,
            "cycle": self.cycle,
            "budget_initial": self.budget_initial,
            "budget_remaining": self.budget_remaining,
            "blocking_finding_ids": list(self.blocking_finding_ids),
        }


class RetryBudgetLedger:
    """
    Enforce the per-run retry budget.

    Action semantics:
    - `remediate`: one cycle was charged; the caller schedules remediation work
    - `stop`: the budget is exhausted; the caller fails the run
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def decide(self, run: WorkflowRun, gate: Gate) -> BudgetDecision:
        """Return the decision for ``gate`` without charging the budget."""
        if gate.passed:
            raise ValueError(f"gate for phase {gate.phase!r} passed; nothing to decide")
        remaining = run.retry_budget_remaining
        return BudgetDecision(
            action=BudgetAction.STOP if remaining <= 0 else BudgetAction.REMEDIATE,
            run_id=run.id,
            phase=gate.phase,
            cycle=run.cycles_executed + (0 if remaining <= 0 else 1),
            budget_initial=run.retry_budget_initial,
            budget_remaining=max(remaining - 1, 0) if remaining > 0 else 0,
            blocking_finding_ids=tuple(finding.id for finding in gate.blocking_findings),
        )

    def charge(self, run: WorkflowRun, gate: Gate) -> BudgetDecision:
        """Decide and, for `remediate`, consume exactly one cycle from ``run``."""
        decision = self.decide(run, gate)
        if decision.action is BudgetAction.REMEDIATE:
            run.retry_budget_remaining -= 1
            run.cycles_executed += 1
            if run.cycles_executed > run.retry_budget_initial:
                raise RuntimeError(
                    f"run {run.id}: cycles_executed {run.cycles_executed} exceeds "
                    f"retry budget {run.retry_budget_initial}"
                )
        self._log_decision(decision)
        return decision

    def _log_decision(self, decision: BudgetDecision) -> None:
        self._logger.info("control_plane_budget_decision", **decision.to_dict())


__all__ = ["BudgetAction", "BudgetDecision", "RetryBudgetLedger"]
