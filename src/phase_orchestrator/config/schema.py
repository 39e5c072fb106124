"""
phase-orchestrator — configuration schema and validation.

Purpose
- Own the built-in defaults for ``orchestrator.toml`` and the rules every
  effective configuration must satisfy before an engine is built from it.

Functional requirements
- Report every problem at once as ``(dotted.path, message)`` pairs.
- Reject unknown keys, and reject credential-looking keys with a dedicated message.
- Provide the deep-merge used by the loader's precedence chain.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from phase_orchestrator.constants import (
    CANONICAL_PHASES,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_GATE_THRESHOLDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RETRY_BUDGET,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    SEVERITIES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
THRESHOLD_VALUES: Final[tuple[str, ...]] = (*SEVERITIES, "none")

# Relative values are resolved against the directory of the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

_CAPABILITY_NAME: Final[re.Pattern[str]] = re.compile(r"[a-z0-9][a-z0-9_.:-]*")
_WORD_BOUNDARY: Final[re.Pattern[str]] = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|[^A-Za-z0-9]+")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SECRET_PAIRS: Final[frozenset[tuple[str, str]]] = frozenset(
    {("api", "key"), ("access", "token"), ("client", "secret"), ("private", "key")}
)
_SECRET_MESSAGE: Final[str] = "embedded secret values are forbidden in orchestrator config"


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    max_concurrency: int
    default_timeout_seconds: float
    retry_budget: int
    phases: list[str]


class GatesConfig(TypedDict):
    thresholds: dict[str, str]


class CapabilityOverride(TypedDict, total=False):
    timeout_seconds: float
    phase: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    event_buffer_size: int
    log_file: NotRequired[str]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    gates: GatesConfig
    capabilities: dict[str, CapabilityOverride]
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "engine": {
        "max_concurrency": DEFAULT_MAX_CONCURRENCY,
        "default_timeout_seconds": DEFAULT_TASK_TIMEOUT_SECONDS,
        "retry_budget": DEFAULT_RETRY_BUDGET,
        "phases": list(CANONICAL_PHASES),
    },
    "gates": {"thresholds": dict(DEFAULT_GATE_THRESHOLDS)},
    "capabilities": {},
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "event_buffer_size": 512,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config when valid, otherwise every issue found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by :func:`assert_valid_config`; ``issues`` keeps the structured detail."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {item.path}: {item.message}" for item in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


# A field check returns the normalized value, or None after recording an issue.
_Check = Callable[[object, str, _Issues], Any]


def default_config() -> OrchestratorConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the phase-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested tables merge, everything else
    is replaced."""
    merged: dict[str, Any] = _copy_tree(base)
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _copy_tree(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _Issues()
    root = _mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _check_keys(root, _SECTIONS.keys(), _SECTIONS.keys() - {"capabilities"}, "", issues)
    normalized: dict[str, Any] = {"capabilities": {}}
    for name, validate_section in _SECTIONS.items():
        if root.get(name) is None:
            continue
        section = _mapping(root[name], name, issues)
        if section is not None:
            normalized[name] = validate_section(section, name, issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with credential-looking keys replaced by ``<redacted>``."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


# -- field checks ------------------------------------------------------------------------------


def _text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    if not value.strip():
        issues.add(path, "must not be empty")
        return None
    return value.strip()


def _path_text(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _text(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _flag(value: object, path: str, issues: _Issues) -> bool | None:
    if not isinstance(value, bool):
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    return value


def _integer(minimum: int) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        return value

    return check


def _positive_seconds(value: object, path: str, issues: _Issues) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    if not math.isfinite(value):
        issues.add(path, "must be finite")
        return None
    if value <= 0:
        issues.add(path, "must be > 0")
        return None
    return float(value)


def _choice(allowed: tuple[str, ...], fold: Callable[[str], str]) -> _Check:
    def check(value: object, path: str, issues: _Issues) -> str | None:
        parsed = _text(fold(value) if isinstance(value, str) else value, path, issues)
        if parsed is not None and parsed not in allowed:
            expected = ", ".join(sorted(allowed))
            issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
            return None
        return parsed

    return check


def _phase_list(value: object, path: str, issues: _Issues) -> list[str] | None:
    if not isinstance(value, (list, tuple)) or not value:
        issues.add(path, "expected a non-empty array of phase names")
        return None
    phases: list[str] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        name = _text(item, item_path, issues)
        if name is not None and name in phases:
            issues.add(item_path, f"duplicate phase {name!r}")
        elif name is not None:
            phases.append(name)
    return phases


def _schema_version(value: object, path: str, issues: _Issues) -> int | None:
    version = _integer(1)(value, path, issues)
    if version is not None and version != ConfigSchemaVersion:
        issues.add(path, migration_guidance(version))
    return version


# -- sections ----------------------------------------------------------------------------------


def _fields(
    fields: Mapping[str, _Check], *, optional: frozenset[str] = frozenset()
) -> Callable[[dict[str, object], str, _Issues], dict[str, Any]]:
    """Validator for a flat table whose keys are exactly ``fields``."""

    def validate(section: dict[str, object], path: str, issues: _Issues) -> dict[str, Any]:
        _check_keys(section, fields.keys(), fields.keys() - optional, path, issues)
        out: dict[str, Any] = {}
        for key, check in fields.items():
            if key in section:
                parsed = check(section[key], _join(path, key), issues)
                if parsed is not None:
                    out[key] = parsed
        return out

    return validate


def _gates(section: dict[str, object], path: str, issues: _Issues) -> dict[str, Any]:
    _check_keys(section, {"thresholds"}, set(), path, issues)
    thresholds: dict[str, str] = {}
    table_path = _join(path, "thresholds")
    table = _mapping(section.get("thresholds", {}), table_path, issues) or {}
    severity = _choice(THRESHOLD_VALUES, str.lower)
    for phase in sorted(table):
        parsed = severity(table[phase], _join(table_path, phase), issues)
        if parsed is not None:
            thresholds[phase] = parsed
    return {"thresholds": thresholds}


_capability_override = _fields(
    {"timeout_seconds": _positive_seconds, "phase": _text},
    optional=frozenset({"timeout_seconds", "phase"}),
)


def _capabilities(section: dict[str, object], path: str, issues: _Issues) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in sorted(section):
        entry_path = _join(path, name)
        if _CAPABILITY_NAME.fullmatch(name) is None:
            issues.add(entry_path, "capability names must match [a-z0-9][a-z0-9_.:-]*")
            continue
        entry = _mapping(section[name], entry_path, issues)
        if entry is not None:
            overrides[name] = _capability_override(entry, entry_path, issues)
    return overrides


_SECTIONS: Final[dict[str, Callable[[dict[str, object], str, _Issues], dict[str, Any]]]] = {
    "meta": _fields({"schema_version": _schema_version}),
    "engine": _fields(
        {
            "max_concurrency": _integer(1),
            "default_timeout_seconds": _positive_seconds,
            "retry_budget": _integer(0),
            "phases": _phase_list,
        }
    ),
    "gates": _gates,
    "capabilities": _capabilities,
    "observability": _fields(
        {
            "log_level": _choice(LOG_LEVELS, str.upper),
            "log_dir": _path_text,
            "log_to_stdout": _flag,
            "event_buffer_size": _integer(1),
            "log_file": _path_text,
        },
        optional=frozenset({"log_file"}),
    ),
}


# -- helpers -----------------------------------------------------------------------------------


def _mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            out[key] = item
        else:
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return out


def _check_keys(
    section: Mapping[str, object],
    allowed: Iterable[str],
    required: Iterable[str],
    path: str,
    issues: _Issues,
) -> None:
    for key in sorted(set(section) - set(allowed)):
        issues.add(_join(path, key), _SECRET_MESSAGE if _is_secret_key(key) else "unknown field")
    for key in sorted(set(required) - set(section)):
        issues.add(_join(path, key), "missing required field")


def _is_secret_key(key: str) -> bool:
    words = [word.lower() for word in _WORD_BOUNDARY.split(key.strip()) if word]
    if any(word in _SECRET_WORDS for word in words):
        return True
    return any(pair in _SECRET_PAIRS for pair in zip(words, words[1:], strict=False))


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _copy_tree(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _copy_tree(value[key]) for key in sorted(value) if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_copy_tree(item) for item in value]
    return copy.deepcopy(value)


def _redacted(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _is_secret_key(key) else _redacted(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "CapabilityOverride",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "EngineConfig",
    "LOG_LEVELS",
    "ObservabilityConfig",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "THRESHOLD_VALUES",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
