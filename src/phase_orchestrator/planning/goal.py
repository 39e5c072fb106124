"""Goal descriptor loading from mappings and JSON, TOML, or YAML files."""

from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from phase_orchestrator.constants import GOAL_SCHEMA_VERSION
from phase_orchestrator.domain.errors import GoalValidationError
from phase_orchestrator.domain.models import GoalDescriptor

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


def goal_from_mapping(data: Mapping[str, Any]) -> GoalDescriptor:
    """Parse a goal mapping (snake_case or camelCase keys) into a ``GoalDescriptor``."""
    if not isinstance(data, Mapping):
        raise GoalValidationError(f"goal must be an object, got {type(data).__name__}")
    # TOML files nest the descriptor under a [goal] table.
    if set(data) == {"goal"} and isinstance(data["goal"], Mapping):
        data = data["goal"]

    version = data.get("schema_version", GOAL_SCHEMA_VERSION)
    if version != GOAL_SCHEMA_VERSION:
        raise GoalValidationError(
            f"unsupported goal schema_version {version!r}; expected {GOAL_SCHEMA_VERSION}"
        )
    try:
        return GoalDescriptor.from_dict(data)
    except ValueError as exc:
        raise GoalValidationError(str(exc)) from exc


def load_goal(source: str | Path | Mapping[str, Any]) -> GoalDescriptor:
    """Load a goal from a mapping or from a ``.json``, ``.toml``, ``.yaml``/``.yml`` file."""
    if isinstance(source, Mapping):
        return goal_from_mapping(source)

    path = Path(source).expanduser()
    try:
        raw_bytes = path.read_bytes()
    except OSError as exc:
        raise GoalValidationError(f"unable to read goal file {path}: {exc}") from exc

    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            parsed: object = tomllib.loads(raw_bytes.decode("utf-8"))
        elif suffix in _YAML_SUFFIXES:
            parsed = yaml.safe_load(raw_bytes)
        else:
            parsed = json.loads(raw_bytes)
    except (
        tomllib.TOMLDecodeError,
        yaml.YAMLError,
        json.JSONDecodeError,
        UnicodeDecodeError,
    ) as exc:
        raise GoalValidationError(f"invalid goal file {path}: {exc}") from exc

    if not isinstance(parsed, Mapping):
        raise GoalValidationError(f"goal file root must be an object: {path}")
    return goal_from_mapping(parsed)


__all__ = ["goal_from_mapping", "load_goal"]
