"""Unit tests for the phase quality gate."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from phase_orchestrator.domain.models import Finding, GateVerdict, Severity
from phase_orchestrator.verification_plane.quality_gate import QualityGateEvaluator, evaluate


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _finding(index: int, severity: Severity) -> Finding:
    return Finding(
        id=f"f-{index:04d}",
        severity=severity,
        task_id="t02-review",
        capability="review",
        phase="review",
        description=f"finding {index}",
    )


def test_gate_passes_without_findings() -> None:
    gate = evaluate("review", [], "high", cycle=0)
    assert gate.verdict is GateVerdict.PASS
    assert gate.blocking_findings == ()
    assert gate.threshold is Severity.HIGH


def test_findings_at_or_above_threshold_block_in_input_order() -> None:
    findings = [
        _finding(1, Severity.CRITICAL),
        _finding(2, Severity.LOW),
        _finding(3, Severity.HIGH),
    ]
    logger = RecordingLogger()
    gate = QualityGateEvaluator(logger=logger).evaluate("review", findings, Severity.HIGH, cycle=2)

    assert gate.verdict is GateVerdict.FAIL
    assert [finding.id for finding in gate.blocking_findings] == ["f-0001", "f-0003"]
    assert gate.evaluated_finding_ids == ("f-0001", "f-0002", "f-0003")
    assert gate.cycle == 2
    assert logger.events == [
        (
            "quality_gate_evaluated",
            {
                "phase": "review",
                "threshold": "high",
                "verdict": "fail",
                "cycle": 2,
                "evaluated": 3,
                "blocking": ["f-0001", "f-0003"],
            },
        )
    ]


@pytest.mark.parametrize("threshold", [None, "none", "NONE"])
def test_none_threshold_never_blocks(threshold: str | None) -> None:
    gate = evaluate("deployment", [_finding(1, Severity.CRITICAL)], threshold)
    assert gate.passed
    assert gate.threshold is None
    assert gate.evaluated_finding_ids == ("f-0001",)


_SEVERITY = st.sampled_from(list(Severity))
_THRESHOLD = st.one_of(st.none(), _SEVERITY)


@given(severities=st.lists(_SEVERITY, max_size=12), threshold=_THRESHOLD)
@settings(max_examples=80, derandomize=True, deadline=None)
def test_property_gate_evaluation_is_idempotent(
    severities: list[Severity], threshold: Severity | None
) -> None:
    findings = [_finding(index, severity) for index, severity in enumerate(severities, start=1)]

    first = evaluate("review", findings, threshold)
    second = evaluate("review", list(findings), threshold)

    assert first == second
    assert first.to_json() == second.to_json()
    expected_blocking = [
        finding
        for finding in findings
        if threshold is not None and finding.severity.weight >= threshold.weight
    ]
    assert list(first.blocking_findings) == expected_blocking
    assert first.passed is (not expected_blocking)
