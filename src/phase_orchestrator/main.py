"""Console entrypoint: runs the CLI and maps every outcome onto a fixed exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m phase_orchestrator`` and the console script.

    Succeeded runs exit 0, failed or aborted runs 1, config/goal/worker-factory
    problems 2, anything unexpected 4 (with a traceback on stderr).
    """
    try:
        from phase_orchestrator.ui.cli import run_cli

        code: object = run_cli(argv)
    except SystemExit as exc:
        code = exc.code
    except Exception as exc:  # noqa: BLE001 - process boundary
        if _is_operator_error(exc):
            sys.stderr.write(f"{str(exc).strip() or type(exc).__name__}\n")
            return ExitCode.CONFIG_ERROR
        traceback.print_exception(exc, file=sys.stderr)
        return ExitCode.INTERNAL_ERROR

    if code is None:
        return ExitCode.SUCCESS
    if isinstance(code, int) and code in {member.value for member in ExitCode}:
        return code
    if isinstance(code, str) and code.strip():
        sys.stderr.write(f"{code.strip()}\n")
    return ExitCode.INTERNAL_ERROR


def _is_operator_error(exc: BaseException) -> bool:
    from phase_orchestrator.config import ConfigLoadError, ConfigValidationError
    from phase_orchestrator.domain.errors import GoalValidationError

    operator_errors = (
        ConfigLoadError,
        ConfigValidationError,
        GoalValidationError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
    )
    return any(isinstance(item, operator_errors) for item in _causes(exc))


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )


__all__ = ["ExitCode", "cli_entrypoint"]
