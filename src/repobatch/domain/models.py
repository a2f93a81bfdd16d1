"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import NoReturn

from repobatch.constants import (
    CHECKPOINT_FILENAME,
    FAILURE_SET_FILENAME,
    LOCK_FILENAME,
    LOGS_DIRNAME,
    RESULT_SCHEMA_VERSION,
    RESULT_SUFFIX,
    RESULTS_DIRNAME,
    SUMMARY_FILENAME,
    TARGET_RESULTS_DIRNAME,
    TMP_DIRNAME,
)
from repobatch.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_NOTE = 4096


class WorkflowStatus(StrEnum):
    RAN_OK = "ran-ok"
    RAN_FAIL = "ran-fail"
    SKIPPED_OK = "skipped-ok"
    SKIPPED_NON_TARGET = "skipped-non-target"


class CommitStatus(StrEnum):
    COMMITTED = "committed"
    NO_CHANGES = "no_changes"
    COMMIT_FAILED = "commit_failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


class RunnerState(StrEnum):
    """States visited by the per-target workflow runner."""

    PENDING = "pending"
    SETUP = "setup"
    SKIPPED_CHECKPOINT = "skipped_checkpoint"
    SKIPPED_NON_TARGET = "skipped_non_target"
    RUN_TOOL = "run_tool"
    TOOL_OK = "tool_ok"
    TOOL_FAILED = "tool_failed"
    VERIFY = "verify"
    FIXUP = "fixup"
    COMMIT_ATTEMPT = "commit_attempt"
    COMMITTED = "committed"
    NO_CHANGES = "no_changes"
    COMMIT_FAILED = "commit_failed"
    TERMINAL = "terminal"


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(value: object, path: str, *, allow_empty: bool = False, max_len: int = 1024) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        _fail(path, "must not be empty")
    if len(value) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return value


def _as_optional_int(value: object, path: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer or null, got {type(value).__name__}")
    return value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {type(value).__name__}")
    return value


@dataclass(frozen=True, slots=True)
class Target:
    """One repository directory processed by the orchestrator."""

    path: Path
    name: str
    target_id: str

    def __post_init__(self) -> None:
        if not self.path.is_absolute():
            raise ValueError(f"target path must be absolute: {self.path}")
        _as_str(self.name, "Target.name")
        _as_str(self.target_id, "Target.target_id")

    @classmethod
    def from_path(cls, path: Path | str, *, target_id: str | None = None) -> Target:
        resolved = Path(path).resolve()
        name = resolved.name
        return cls(
            path=resolved,
            name=name,
            target_id=target_id if target_id is not None else domain_ids.sanitize_target_id(name),
        )


@dataclass(frozen=True, slots=True)
class CheckpointRecord:
    """One line of the append-only checkpoint log."""

    target: str
    status: str
    timestamp: str
    duration_seconds: int
    exit_code: int | None
    tool: str
    note: str = ""

    def __post_init__(self) -> None:
        _as_str(self.target, "CheckpointRecord.target")
        _as_str(self.status, "CheckpointRecord.status")
        _as_str(self.timestamp, "CheckpointRecord.timestamp")
        _as_int(self.duration_seconds, "CheckpointRecord.duration_seconds", minimum=0)
        _as_optional_int(self.exit_code, "CheckpointRecord.exit_code")
        _as_str(self.tool, "CheckpointRecord.tool", allow_empty=True)
        _as_str(self.note, "CheckpointRecord.note", allow_empty=True, max_len=_MAX_NOTE)


@dataclass(frozen=True, slots=True)
class TargetResult:
    """Per-target outcome for one pass of a run."""

    target_id: str
    name: str
    workflow_status: WorkflowStatus
    commit_status: CommitStatus
    exit_code: int | None = None
    duration_seconds: float = 0.0
    fixup_applied: bool = False
    attempt: int = 1
    note: str = ""
    states: tuple[RunnerState, ...] = field(default_factory=tuple)
    schema_version: int = RESULT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        _as_str(self.target_id, "TargetResult.target_id")
        _as_str(self.name, "TargetResult.name")
        if not isinstance(self.workflow_status, WorkflowStatus):
            object.__setattr__(
                self, "workflow_status", WorkflowStatus(str(self.workflow_status))
            )
        if not isinstance(self.commit_status, CommitStatus):
            object.__setattr__(self, "commit_status", CommitStatus(str(self.commit_status)))
        _as_optional_int(self.exit_code, "TargetResult.exit_code")
        _as_float(self.duration_seconds, "TargetResult.duration_seconds", minimum=0.0)
        _as_bool(self.fixup_applied, "TargetResult.fixup_applied")
        _as_int(self.attempt, "TargetResult.attempt", minimum=1)
        _as_str(self.note, "TargetResult.note", allow_empty=True, max_len=_MAX_NOTE)

    @property
    def failed(self) -> bool:
        return self.workflow_status is WorkflowStatus.RAN_FAIL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "target_id": self.target_id,
            "name": self.name,
            "workflow_status": self.workflow_status.value,
            "commit_status": self.commit_status.value,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "fixup_applied": self.fixup_applied,
            "attempt": self.attempt,
            "note": self.note,
            "states": [state.value for state in self.states],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TargetResult:
        path = cls.__name__
        schema_version = _as_int(data.get("schema_version"), f"{path}.schema_version")
        if schema_version != RESULT_SCHEMA_VERSION:
            _fail(f"{path}.schema_version", f"unsupported version {schema_version}")
        try:
            workflow_status = WorkflowStatus(
                _as_str(data.get("workflow_status"), f"{path}.workflow_status")
            )
            commit_status = CommitStatus(
                _as_str(data.get("commit_status"), f"{path}.commit_status")
            )
        except ValueError as exc:
            _fail(path, str(exc))

        raw_states = data.get("states", [])
        if not isinstance(raw_states, list):
            _fail(f"{path}.states", "expected array")
        try:
            states = tuple(RunnerState(str(item)) for item in raw_states)
        except ValueError as exc:
            _fail(f"{path}.states", str(exc))

        return cls(
            target_id=_as_str(data.get("target_id"), f"{path}.target_id"),
            name=_as_str(data.get("name"), f"{path}.name"),
            workflow_status=workflow_status,
            commit_status=commit_status,
            exit_code=_as_optional_int(data.get("exit_code"), f"{path}.exit_code"),
            duration_seconds=_as_float(
                data.get("duration_seconds", 0.0), f"{path}.duration_seconds", minimum=0.0
            ),
            fixup_applied=_as_bool(data.get("fixup_applied", False), f"{path}.fixup_applied"),
            attempt=_as_int(data.get("attempt", 1), f"{path}.attempt", minimum=1),
            note=_as_str(data.get("note", ""), f"{path}.note", allow_empty=True, max_len=_MAX_NOTE),
            states=states,
        )

    @classmethod
    def from_json(cls, raw: str) -> TargetResult:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)


@dataclass(frozen=True, slots=True)
class RunLayout:
    """On-disk layout of the state directory for one run.

    Every per-run directory is namespaced under ``run_id`` so concurrent or historical runs
    never collide.
    """

    state_dir: Path
    run_id: str

    def __post_init__(self) -> None:
        domain_ids.validate_run_id(self.run_id)

    @property
    def checkpoint_path(self) -> Path:
        return self.state_dir / CHECKPOINT_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILENAME

    @property
    def log_dir(self) -> Path:
        return self.state_dir / LOGS_DIRNAME / self.run_id

    @property
    def results_dir(self) -> Path:
        return self.state_dir / RESULTS_DIRNAME / self.run_id

    @property
    def target_results_dir(self) -> Path:
        return self.results_dir / TARGET_RESULTS_DIRNAME

    @property
    def tmp_dir(self) -> Path:
        return self.state_dir / TMP_DIRNAME / self.run_id

    @property
    def failure_set_path(self) -> Path:
        return self.results_dir / FAILURE_SET_FILENAME

    @property
    def summary_path(self) -> Path:
        return self.results_dir / SUMMARY_FILENAME

    def transcript_path(self, target: Target) -> Path:
        return self.log_dir / f"{target.target_id}.log"

    def result_path(self, target_id: str) -> Path:
        return self.target_results_dir / f"{target_id}{RESULT_SUFFIX}"

    def target_tmp_dir(self, target: Target) -> Path:
        return self.tmp_dir / target.target_id

    def ensure(self) -> None:
        for directory in (
            self.state_dir,
            self.log_dir,
            self.results_dir,
            self.target_results_dir,
            self.tmp_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)


__all__ = [
    "CheckpointRecord",
    "CommitStatus",
    "JSONScalar",
    "JSONValue",
    "RunLayout",
    "RunnerState",
    "Target",
    "TargetResult",
    "WorkflowStatus",
]
