"""Engine configuration: ``orchestrator.toml`` layered with ``PHASE_*`` env and CLI overrides."""

from phase_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PATH_SEPARATOR,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_overrides,
    load_config,
    normalize_paths,
)
from phase_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    OrchestratorConfig,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PATH_SEPARATOR",
    "ENV_PREFIX",
    "OrchestratorConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
