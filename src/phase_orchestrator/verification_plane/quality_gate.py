"""
phase-orchestrator — quality gate evaluator.

Purpose
- Decide whether a phase may hand off to the next one, given the findings of
  its current tasks and the phase's severity threshold.

Functional requirements
- A finding blocks when its severity is at or above the threshold.
- A ``None`` threshold never blocks.
- Blocking findings are returned verbatim, in input order.

Non-functional requirements
- Pure: identical inputs produce identical gates. Logging is the only effect.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from phase_orchestrator.domain.models import Finding, Gate, GateVerdict, Severity, parse_threshold


class QualityGateEvaluator:
    """Generic phase + threshold gate; checklist logic belongs to workers."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def evaluate(
        self,
        phase: str,
        findings: Iterable[Finding],
        threshold: Severity | str | None = None,
        cycle: int = 0,
    ) -> Gate:
        resolved = parse_threshold(threshold, f"threshold[{phase}]")
        ordered = tuple(findings)
        blocking = (
            ()
            if resolved is None
            else tuple(finding for finding in ordered if finding.severity.meets(resolved))
        )
        gate = Gate(
            phase=phase,
            threshold=resolved,
            verdict=GateVerdict.FAIL if blocking else GateVerdict.PASS,
            blocking_findings=blocking,
            evaluated_finding_ids=tuple(finding.id for finding in ordered),
            cycle=cycle,
        )
        self._logger.info(
            "quality_gate_evaluated",
            phase=phase,
            threshold=None if resolved is None else resolved.value,
            verdict=gate.verdict.value,
            cycle=cycle,
            evaluated=len(ordered),
            blocking=[finding.id for finding in blocking],
        )
        return gate


def evaluate(
    phase: str,
    findings: Iterable[Finding],
    threshold: Severity | str | None = None,
    cycle: int = 0,
) -> Gate:
    """Module-level convenience over a default :class:`QualityGateEvaluator`."""
    return QualityGateEvaluator().evaluate(phase, findings, threshold, cycle)


__all__ = ["QualityGateEvaluator", "evaluate"]
