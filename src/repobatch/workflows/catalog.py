"""Deterministic workflow catalog loader.

The packaged ``catalog.yaml`` defines the built-in workflows; an optional user catalog of
the same shape is layered on top, replacing entries by name.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources
from pathlib import Path, PurePosixPath
from typing import Final, TypeAlias, cast

import yaml

PathLike: TypeAlias = str | os.PathLike[str]

CATALOG_SCHEMA_VERSION: Final[int] = 1
_PACKAGED_CATALOG: Final[str] = "catalog.yaml"

_REQUIRED_FIELDS: Final[frozenset[str]] = frozenset(
    {"name", "kind", "requires_repository", "commit_message"}
)
_OPTIONAL_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "description",
        "needs_api_key",
        "binary",
        "artifact",
        "edit_files",
        "gitignore_entries",
        "license_file",
        "context_files",
        "tool_args",
    }
)
_ALLOWED_FIELDS: Final[frozenset[str]] = _REQUIRED_FIELDS | _OPTIONAL_FIELDS
_KNOWN_KINDS: Final[frozenset[str]] = frozenset({"readme", "command"})


class WorkflowCatalogError(ValueError):
    """Raised when a workflow catalog is missing, malformed, or inconsistent."""


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    """Validated description of one workflow."""

    name: str
    kind: str
    requires_repository: bool
    commit_message: str
    description: str = ""
    needs_api_key: bool = False
    binary: str | None = None
    artifact: str | None = None
    edit_files: tuple[str, ...] = ()
    gitignore_entries: tuple[str, ...] = ()
    license_file: str | None = None
    context_files: tuple[str, ...] = ()
    tool_args: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, payload: object, *, location: str) -> WorkflowDefinition:
        parsed = _as_string_key_mapping(payload, location)
        unknown = sorted(set(parsed) - _ALLOWED_FIELDS)
        if unknown:
            raise WorkflowCatalogError(f"{location}: unexpected fields {unknown}")
        missing = sorted(_REQUIRED_FIELDS - set(parsed))
        if missing:
            raise WorkflowCatalogError(f"{location}: missing required fields {missing}")

        kind = _as_non_empty_str(parsed["kind"], f"{location}.kind")
        if kind not in _KNOWN_KINDS:
            raise WorkflowCatalogError(
                f"{location}.kind: unknown kind {kind!r}; expected one of {sorted(_KNOWN_KINDS)}"
            )

        artifact = _as_optional_relative_path(parsed.get("artifact"), f"{location}.artifact")
        license_file = _as_optional_relative_path(
            parsed.get("license_file"), f"{location}.license_file"
        )
        binary = parsed.get("binary")
        return cls(
            name=_as_non_empty_str(parsed["name"], f"{location}.name"),
            kind=kind,
            requires_repository=_as_bool(
                parsed["requires_repository"], f"{location}.requires_repository"
            ),
            commit_message=_as_non_empty_str(
                parsed["commit_message"], f"{location}.commit_message"
            ),
            description=str(parsed.get("description") or "").strip(),
            needs_api_key=_as_bool(parsed.get("needs_api_key", False), f"{location}.needs_api_key"),
            binary=None if binary is None else _as_non_empty_str(binary, f"{location}.binary"),
            artifact=artifact,
            edit_files=_as_path_list(parsed.get("edit_files"), f"{location}.edit_files"),
            gitignore_entries=_as_str_list(
                parsed.get("gitignore_entries"), f"{location}.gitignore_entries"
            ),
            license_file=license_file,
            context_files=_as_path_list(parsed.get("context_files"), f"{location}.context_files"),
            tool_args=_as_str_list(parsed.get("tool_args"), f"{location}.tool_args"),
        )


class WorkflowCatalog:
    """Name-indexed collection of workflow definitions."""

    def __init__(self, definitions: Mapping[str, WorkflowDefinition]) -> None:
        self._definitions = dict(sorted(definitions.items()))

    @classmethod
    def load(cls, user_catalog: PathLike | None = None) -> WorkflowCatalog:
        """Load the packaged catalog, then layer ``user_catalog`` on top when given."""

        packaged = resources.files("repobatch.workflows").joinpath(_PACKAGED_CATALOG)
        definitions = _parse_catalog_text(packaged.read_text(encoding="utf-8"), _PACKAGED_CATALOG)

        if user_catalog is not None:
            path = Path(user_catalog).expanduser()
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise WorkflowCatalogError(f"workflow catalog does not exist: {path}") from exc
            except OSError as exc:
                raise WorkflowCatalogError(f"cannot read workflow catalog {path}: {exc}") from exc
            definitions.update(_parse_catalog_text(text, str(path)))

        return cls(definitions)

    def names(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    def get(self, name: str) -> WorkflowDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise WorkflowCatalogError(
                f"unknown workflow {name!r}; available: {', '.join(self._definitions)}"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def _parse_catalog_text(text: str, source: str) -> dict[str, WorkflowDefinition]:
    try:
        loaded = cast("object", yaml.safe_load(text))
    except yaml.YAMLError as exc:
        raise WorkflowCatalogError(f"{source}: invalid YAML ({exc})") from exc

    root = _as_string_key_mapping(loaded, source)
    version = root.get("schema_version")
    if version != CATALOG_SCHEMA_VERSION:
        raise WorkflowCatalogError(
            f"{source}: unsupported schema_version {version!r}; expected {CATALOG_SCHEMA_VERSION}"
        )
    entries = root.get("workflows")
    if not isinstance(entries, list):
        raise WorkflowCatalogError(f"{source}.workflows: expected a sequence")

    definitions: dict[str, WorkflowDefinition] = {}
    for index, entry in enumerate(entries):
        definition = WorkflowDefinition.from_mapping(entry, location=f"{source}.workflows[{index}]")
        if definition.name in definitions:
            raise WorkflowCatalogError(f"{source}: duplicate workflow name {definition.name!r}")
        definitions[definition.name] = definition
    return definitions


def _as_string_key_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise WorkflowCatalogError(f"{path}: expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise WorkflowCatalogError(
                f"{path}: object keys must be strings, got {type(key).__name__}"
            )
        parsed[key] = item
    return parsed


def _as_non_empty_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise WorkflowCatalogError(f"{path}: expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise WorkflowCatalogError(f"{path}: must not be empty")
    return normalized


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise WorkflowCatalogError(f"{path}: expected bool, got {type(value).__name__}")
    return value


def _as_str_list(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise WorkflowCatalogError(f"{path}: expected a sequence, got {type(value).__name__}")
    return tuple(_as_non_empty_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _as_optional_relative_path(value: object, path: str) -> str | None:
    if value is None:
        return None
    raw = _as_non_empty_str(value, path)
    posix = PurePosixPath(raw)
    if posix.is_absolute() or ".." in posix.parts:
        raise WorkflowCatalogError(f"{path}: must be a relative path inside the target: {raw!r}")
    return posix.as_posix()


def _as_path_list(value: object, path: str) -> tuple[str, ...]:
    items = _as_str_list(value, path)
    return tuple(
        cast("str", _as_optional_relative_path(item, f"{path}[{index}]"))
        for index, item in enumerate(items)
    )


__all__ = [
    "CATALOG_SCHEMA_VERSION",
    "WorkflowCatalog",
    "WorkflowCatalogError",
    "WorkflowDefinition",
]
