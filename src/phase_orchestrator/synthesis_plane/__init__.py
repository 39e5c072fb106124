"""Synthesis plane: merges a terminal run into its deliverable."""

from phase_orchestrator.synthesis_plane.synthesizer import ResultSynthesizer, synthesize

__all__ = ["ResultSynthesizer", "synthesize"]
