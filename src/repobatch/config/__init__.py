"""
repobatch config package public API.

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``repobatch.toml`` + ``REPOBATCH_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from repobatch.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
    resolve_api_key,
)
from repobatch.config.schema import (
    DEFAULT_CONFIG,
    LOG_LEVELS,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    RepobatchConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
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
    "ENV_PREFIX",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "RepobatchConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "resolve_api_key",
]
