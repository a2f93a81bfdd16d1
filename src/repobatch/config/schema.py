"""
repobatch: configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded credentials: the tool API key is only ever named through ``tool.api_key_env``.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, NotRequired, TypedDict

from repobatch.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_API_KEY_ENV,
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT_SECONDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_WORKFLOW_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "root"),
    ("paths", "state_dir"),
    ("paths", "workflow_catalog"),
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class RunConfig(TypedDict):
    workflow: str
    jobs: NotRequired[int]
    timeout_seconds: int
    retry: int
    retry_all_passes: bool
    force: bool
    dry_run: bool


class ToolConfig(TypedDict):
    model: str
    api_key_env: str
    binary: NotRequired[str]
    extra_args: list[str]


class PathsConfig(TypedDict, total=False):
    root: str
    state_dir: str
    workflow_catalog: str


class GitConfig(TypedDict):
    commit_message: NotRequired[str]
    ensure_identity: bool


class ObservabilityConfig(TypedDict):
    log_level: str
    log_to_stderr: bool
    redact_secrets: bool


class RepobatchConfig(TypedDict):
    meta: MetaConfig
    run: RunConfig
    tool: ToolConfig
    paths: PathsConfig
    git: GitConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[RepobatchConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "run": {
        "workflow": "readme",
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "retry": 0,
        "retry_all_passes": False,
        "force": False,
        "dry_run": False,
    },
    "tool": {
        "model": DEFAULT_MODEL,
        "api_key_env": DEFAULT_API_KEY_ENV,
        "extra_args": [],
    },
    "paths": {},
    "git": {
        "ensure_identity": False,
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}

# Keys that may be absent from a valid config; everything else in DEFAULT_CONFIG is required.
_OPTIONAL_KEYS: Final[dict[str, frozenset[str]]] = {
    "run": frozenset({"jobs"}),
    "tool": frozenset({"binary"}),
    "paths": frozenset({"root", "state_dir", "workflow_catalog"}),
    "git": frozenset({"commit_message"}),
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> RepobatchConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade repobatch.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade repobatch"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and the ``config`` command."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections = {
        "meta": _validate_meta,
        "run": _validate_run,
        "tool": _validate_tool,
        "paths": _validate_paths,
        "git": _validate_git,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(sections), "", issues)
    _require_keys(payload, set(sections), "", issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        required = set(DEFAULT_CONFIG[key]) - _OPTIONAL_KEYS.get(key, frozenset())  # type: ignore[literal-required]
        allowed = set(DEFAULT_CONFIG[key]) | _OPTIONAL_KEYS.get(key, frozenset())  # type: ignore[literal-required]
        _reject_unknown_keys(section, allowed, key, issues)
        _require_keys(section, required, key, issues)
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_run(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}

    if "workflow" in payload:
        workflow = _as_str(payload["workflow"], _join(path, "workflow"), issues)
        if workflow is not None:
            if _WORKFLOW_NAME_PATTERN.fullmatch(workflow):
                out["workflow"] = workflow
            else:
                issues.add(_join(path, "workflow"), "must be a lowercase workflow name")

    if "jobs" in payload:
        jobs = _as_int(payload["jobs"], _join(path, "jobs"), issues, minimum=1)
        if jobs is not None:
            out["jobs"] = jobs

    for key in ("timeout_seconds", "retry"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=0)
            if parsed is not None:
                out[key] = parsed

    for key in ("retry_all_passes", "force", "dry_run"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag

    return out


def _validate_tool(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}

    if "model" in payload:
        model = _as_str(payload["model"], _join(path, "model"), issues)
        if model is not None:
            out["model"] = model

    if "api_key_env" in payload:
        env_name = _as_env_name(payload["api_key_env"], _join(path, "api_key_env"), issues)
        if env_name is not None:
            out["api_key_env"] = env_name

    if "binary" in payload:
        binary = _as_path_text(payload["binary"], _join(path, "binary"), issues)
        if binary is not None:
            out["binary"] = binary

    if "extra_args" in payload:
        args = _as_str_list(payload["extra_args"], _join(path, "extra_args"), issues)
        if args is not None:
            out["extra_args"] = args

    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in ("root", "state_dir", "workflow_catalog"):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_git(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}

    if "commit_message" in payload:
        message = _as_str(payload["commit_message"], _join(path, "commit_message"), issues)
        if message is not None:
            out["commit_message"] = message

    if "ensure_identity" in payload:
        flag = _as_bool(payload["ensure_identity"], _join(path, "ensure_identity"), issues)
        if flag is not None:
            out["ensure_identity"] = flag

    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}

    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = raw_level.upper() if isinstance(raw_level, str) else raw_level
        parsed_level = _as_enum(level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if parsed_level is not None:
            out["log_level"] = parsed_level

    for key in ("log_to_stderr", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag

    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if isinstance(value, str) or not isinstance(value, Sequence):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            issues.add(f"{path}[{index}]", f"expected string, got {type(item).__name__}")
            return None
        out.append(item)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: OPENROUTER_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        out[key] = _deep_copy_value(value[key])
    return out


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _key_is_sensitive_for_redaction(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    # ``*_env`` keys only name a variable, so they stay visible.
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    return _looks_sensitive_key(normalized)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "RepobatchConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
