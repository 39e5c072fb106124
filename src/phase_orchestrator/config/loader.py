"""
phase-orchestrator — runtime config loader.

Purpose
- Produce the effective engine config from four layers: built-in defaults,
  ``orchestrator.toml``, ``PHASE_*`` environment variables, CLI overrides.

Functional requirements
- Later layers win: CLI > env > file > defaults.
- Env names join the config path with ``__`` because keys contain underscores,
  e.g. ``PHASE_ENGINE__MAX_CONCURRENCY`` or ``PHASE_GATES__THRESHOLDS__SECURITY``.
- The file layer is validated on its own so a broken file is reported as such,
  then the fully merged config is validated again.
- ``observability.log_dir`` is resolved relative to the config file.
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from phase_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "orchestrator.toml"
ENV_PREFIX: Final[str] = "PHASE_"
ENV_PATH_SEPARATOR: Final[str] = "__"

_Coercer = Callable[[str, str], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def _text(raw: str, env_name: str) -> object:
    return raw


def _integer(raw: str, env_name: str) -> object:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{env_name} must be an integer (got {raw!r})") from exc


def _number(raw: str, env_name: str) -> object:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{env_name} must be a number (got {raw!r})") from exc


def _flag(raw: str, env_name: str) -> object:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")


def _names(raw: str, env_name: str) -> object:
    return [item.strip() for item in raw.split(",") if item.strip()]


_ENV_FIELDS: Final[dict[tuple[str, ...], _Coercer]] = {
    ("meta", "schema_version"): _integer,
    ("engine", "max_concurrency"): _integer,
    ("engine", "default_timeout_seconds"): _number,
    ("engine", "retry_budget"): _integer,
    ("engine", "phases"): _names,
    ("observability", "log_level"): _text,
    ("observability", "log_dir"): _text,
    ("observability", "log_to_stdout"): _flag,
    ("observability", "event_buffer_size"): _integer,
}

# Keys that only exist once a user names them: one capability or one phase.
_ENV_PATTERNS: Final[tuple[tuple[re.Pattern[str], _Coercer], ...]] = (
    (re.compile(r"capabilities/[^/]+/timeout_seconds"), _number),
    (re.compile(r"capabilities/[^/]+/phase"), _text),
    (re.compile(r"gates/thresholds/[^/]+"), _text),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config; ``config_path`` must exist when given explicitly."""
    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()
    file_layer = _read_toml(path) if config_path is not None or path.exists() else {}

    config = assert_valid_config(merge_config(default_config(), file_layer))
    config = merge_config(config, env_overrides(os.environ if environ is None else environ))
    config = merge_config(config, _dotted_overrides(cli_overrides or {}))
    config = assert_valid_config(config)
    return normalize_paths(config, base_dir=path.parent)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``PHASE_*`` variables into a nested override mapping."""
    overrides: dict[str, Any] = {}
    for env_name in sorted(environ):
        if not env_name.startswith(ENV_PREFIX):
            continue
        path = tuple(
            part.lower()
            for part in env_name[len(ENV_PREFIX) :].split(ENV_PATH_SEPARATOR)
            if part
        )
        coerce = _ENV_FIELDS.get(path) or next(
            (
                coercer
                for pattern, coercer in _ENV_PATTERNS
                if pattern.fullmatch("/".join(path))
            ),
            None,
        )
        if coerce is not None:
            _assign(overrides, path, coerce(environ[env_name].strip(), env_name))
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields (``~`` and ``$VARS`` expanded) against ``base_dir``."""
    resolved = merge_config({}, config)
    for field_path in PATH_FIELDS:
        section = resolved
        for part in field_path[:-1]:
            section = section.get(part, {})
        raw = section.get(field_path[-1]) if isinstance(section, dict) else None
        if isinstance(raw, str):
            candidate = Path(os.path.expandvars(raw)).expanduser()
            if not candidate.is_absolute():
                candidate = base_dir / candidate
            section[field_path[-1]] = Path(os.path.normpath(candidate)).as_posix()
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Stable, secret-free JSON rendering for ``phase-orchestrator config``."""
    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigLoadError(f"config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _dotted_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(nested, path, value)
    return nested


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    if isinstance(value, Mapping) and isinstance(target.get(path[-1]), Mapping):
        value = merge_config(target[path[-1]], value)
    target[path[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PATH_SEPARATOR",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
