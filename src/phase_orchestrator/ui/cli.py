"""Command-line interface router for phase-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from phase_orchestrator.capabilities.registry import CapabilityDescriptor, CapabilityRegistry
from phase_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    redact_config,
)
from phase_orchestrator.control_plane.engine import Engine
from phase_orchestrator.domain.errors import DuplicateCapabilityError, GoalValidationError
from phase_orchestrator.domain.models import Deliverable, WorkflowRun
from phase_orchestrator.observability.logging import (
    configure_structlog,
    setup_logging,
    shutdown_logging,
)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="phase-orchestrator",
        description=(
            "phase-orchestrator — phase-gated capability workflow engine.\n\n"
            "Common workflows:\n"
            "  phase-orchestrator plan goal.toml --workers pkg.workers:build\n"
            "  phase-orchestrator run goal.toml --workers pkg.workers:build\n"
            "  phase-orchestrator config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to orchestrator TOML config (default: ./orchestrator.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log at DEBUG level.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Build and print the task graph for a goal without running it",
    )
    plan_parser.add_argument("goal_path", help="Goal descriptor (.json, .toml, .yaml)")
    _add_workers_argument(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    plan_parser.set_defaults(handler=_cmd_plan)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute a goal and emit the deliverable JSON",
    )
    run_parser.add_argument("goal_path", help="Goal descriptor (.json, .toml, .yaml)")
    _add_workers_argument(run_parser)
    run_parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Override engine.max_concurrency for this run.",
    )
    run_parser.add_argument(
        "--output",
        default=None,
        help="Write the deliverable JSON to this path instead of stdout.",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the redacted effective configuration",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit compact JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_workers_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--workers",
        required=True,
        metavar="MODULE:FACTORY",
        help=(
            "Factory returning a CapabilityRegistry, an iterable of CapabilityDescriptor, "
            "or a mapping of capability name to worker."
        ),
    )


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    engine = Engine(load_registry(args.workers), config=config)
    run = _guard_goal(lambda: engine.plan(Path(args.goal_path)))

    if args.json:
        _emit_json(_plan_payload(run))
        return 0

    print(f"Run {run.id} (goal {run.goal.name!r})")
    print(f"Retry budget: {run.retry_budget_initial}")
    for phase in run.phases:
        threshold = run.gate_thresholds.get(phase)
        label = "none" if threshold is None else threshold.value
        print(f"[{phase}] gate threshold: {label}")
        for task in sorted(run.tasks_in_phase(phase), key=lambda item: item.sequence):
            after = ", ".join(task.dependencies) or "-"
            print(f"  {task.id}  {task.capability}  after: {after}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {"engine.max_concurrency": args.max_concurrency}
    if args.verbose:
        overrides["observability.log_level"] = "DEBUG"
    config = _load_effective_config(args, cli_overrides=overrides)
    engine = Engine(load_registry(args.workers), config=config)
    run_id = _guard_goal(lambda: engine.submit(Path(args.goal_path)))

    setup_logging(config["observability"], run_id=run_id)
    try:
        deliverable = asyncio.run(engine.run(run_id))
    finally:
        shutdown_logging()

    rendered = _render_deliverable(deliverable)
    if args.output is None:
        print(rendered)
    else:
        output = Path(args.output).expanduser()
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered + "\n", encoding="utf-8")
        print(f"run {deliverable.run_id} {deliverable.final_status.value}: wrote {output}")
    if not deliverable.succeeded:
        print(
            f"run {deliverable.run_id} {deliverable.final_status.value}: "
            f"{deliverable.failure_reason or 'unknown'}",
            file=sys.stderr,
        )
        return 1
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _emit_json({"command": "config", "config": redact_config(config)})
        return 0
    print(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_registry(target: str) -> CapabilityRegistry:
    """Import ``MODULE:FACTORY`` and turn its return value into a registry."""
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise CLIError(f"--workers must look like MODULE:FACTORY (got {target!r})", exit_code=2)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CLIError(f"cannot import worker module {module_name!r}: {exc}", exit_code=2) from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise CLIError(f"{target!r} is not a callable factory", exit_code=2)

    produced = factory()
    if isinstance(produced, CapabilityRegistry):
        return produced
    registry = CapabilityRegistry()
    if isinstance(produced, Mapping):
        try:
            for name, worker in produced.items():
                registry.register_worker(name, worker)
        except ValueError as exc:
            raise CLIError(f"{target!r}: {exc}", exit_code=2) from exc
        return registry
    if isinstance(produced, Iterable):
        for descriptor in produced:
            if not isinstance(descriptor, CapabilityDescriptor):
                raise CLIError(
                    f"{target!r} yielded {type(descriptor).__name__}; "
                    "expected CapabilityDescriptor",
                    exit_code=2,
                )
            try:
                registry.register(descriptor)
            except DuplicateCapabilityError as exc:
                raise CLIError(f"{target!r}: {exc}", exit_code=2) from exc
        return registry
    raise CLIError(f"{target!r} returned unsupported {type(produced).__name__}", exit_code=2)


def _guard_goal(action: Callable[[], T]) -> T:
    try:
        return action()
    except GoalValidationError as exc:
        raise CLIError(f"{exc.kind}: {exc}", exit_code=2) from exc


def _load_effective_config(
    args: argparse.Namespace, *, cli_overrides: Mapping[str, object] | None = None
) -> dict[str, Any]:
    try:
        return load_config(args.config_path, cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _plan_payload(run: WorkflowRun) -> dict[str, object]:
    return {
        "command": "plan",
        "run_id": run.id,
        "goal": run.goal.name,
        "phases": list(run.phases),
        "gate_thresholds": {
            phase: None if threshold is None else threshold.value
            for phase, threshold in run.gate_thresholds.items()
        },
        "retry_budget": run.retry_budget_initial,
        "tasks": [
            {
                "id": task.id,
                "capability": task.capability,
                "phase": task.phase,
                "dependencies": list(task.dependencies),
            }
            for task in run.iter_ordered_tasks()
        ],
    }


def _render_deliverable(deliverable: Deliverable) -> str:
    return json.dumps(deliverable.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "load_registry", "run_cli"]
