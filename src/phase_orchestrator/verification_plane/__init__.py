"""Verification plane: phase-boundary quality gates."""

from phase_orchestrator.verification_plane.quality_gate import QualityGateEvaluator, evaluate

__all__ = ["QualityGateEvaluator", "evaluate"]
