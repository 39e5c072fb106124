"""Public observability primitives: per-run JSON-lines logging and the event bus."""

from phase_orchestrator.observability.events import DispatchError, EventBus, Subscriber
from phase_orchestrator.observability.logging import (
    LogRedactor,
    RunLog,
    RunLogSettings,
    active_run_log,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    open_run_log,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LogRedactor",
    "RunLog",
    "RunLogSettings",
    "Subscriber",
    "active_run_log",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "open_run_log",
    "setup_logging",
    "shutdown_logging",
]
