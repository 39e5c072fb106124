"""Utility exports for concurrency helpers."""

from phase_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    run_with_timeout,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "run_with_timeout",
]
