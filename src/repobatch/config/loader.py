"""
repobatch: runtime config loader.

Purpose
- Load effective runtime config from defaults, TOML file, env vars, and CLI overrides.

What should be included in this file
- Precedence logic: CLI > env (REPOBATCH_) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to config file location.
- Redacted deterministic dump of effective config.

Functional requirements
- Reject invalid/embedded-secret config via schema validation.
- Resolve the tool API key from an explicit value or the env var named by ``tool.api_key_env``.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from repobatch.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "repobatch.toml"
ENV_PREFIX: Final[str] = "REPOBATCH_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Keys absent from the defaults that can still be set from the environment.
_OPTIONAL_BINDINGS: Final[tuple[tuple[tuple[str, ...], Literal["str", "int", "bool"]], ...]] = (
    (("run", "jobs"), "int"),
    (("tool", "binary"), "str"),
    (("paths", "root"), "str"),
    (("paths", "state_dir"), "str"),
    (("paths", "workflow_catalog"), "str"),
    (("git", "commit_message"), "str"),
)


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: Literal["str", "int", "float", "bool"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    base_dir: Path | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults.

    ``cli_overrides`` may use dotted keys (``"run.jobs"``) or nested mappings. Relative
    paths from the file resolve against the file's directory; relative paths given on the
    command line or in the environment resolve against ``base_dir`` (default: cwd).
    """

    resolved_path = _resolve_config_path(config_path)
    explicit_path = config_path is not None
    env_map = dict(os.environ if environ is None else environ)
    invocation_dir = (base_dir or Path.cwd()).resolve()

    file_payload = _load_toml_file(resolved_path, required=explicit_path)
    merged = merge_config(default_config(), file_payload)
    merged = assert_valid_config(merged)
    merged = normalize_paths(merged, base_dir=resolved_path.parent)

    env_overrides = normalize_paths(_collect_env_overrides(merged, env_map), base_dir=invocation_dir)
    cli_payload = normalize_paths(
        _materialize_cli_overrides(dict(cli_overrides or {})), base_dir=invocation_dir
    )

    merged = merge_config(merged, env_overrides)
    merged = merge_config(merged, cli_payload)
    return assert_valid_config(merged)


def resolve_api_key(
    config: Mapping[str, object],
    *,
    explicit: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    """Return the tool API key: ``explicit`` wins, then the env var named by the config."""

    if explicit is not None and explicit.strip():
        return explicit.strip()
    env_map = os.environ if environ is None else environ
    tool = config.get("tool")
    if not isinstance(tool, Mapping):
        return None
    env_name = tool.get("api_key_env")
    if not isinstance(env_name, str):
        return None
    value = env_map.get(env_name, "").strip()
    return value or None


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        _normalize_path_field(materialized, field_path, base_dir)
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of redacted effective config."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        value = _coerce_env(raw, binding.value_type, env_name, binding.path)
        _set_nested(overrides, binding.path, value)
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}
    for path, value in _iter_scalar_paths(config):
        kind = _kind_for_value(value)
        if kind is None:
            continue
        bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)

    for path, kind in _OPTIONAL_BINDINGS:
        bindings.setdefault(_env_name_for_path(path), _Binding(path=path, value_type=kind))
    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> Literal["str", "int", "float", "bool"] | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    return None


def _coerce_env(
    raw: str,
    value_type: Literal["str", "int", "float", "bool"],
    env_name: str,
    path: tuple[str, ...],
) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {'.'.join(path)} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        value = cli_overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        if isinstance(value, Mapping):
            value = {k: v for k, v in merge_config({}, value).items() if v is not None}
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping):
            return None
        if part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_path_field(config: dict[str, Any], path: tuple[str, ...], base_dir: Path) -> None:
    value = _get_nested(config, path)
    if not isinstance(value, str) or not value.strip():
        return
    _set_nested(config, path, _normalize_one_path(value, base_dir))


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    normalized = Path(os.path.normpath(str(candidate)))
    return normalized.as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
    "resolve_api_key",
]
