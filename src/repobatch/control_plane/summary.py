"""
repobatch: summary reporter

Purpose
- Aggregate per-target result records into counts and a pass/fail verdict.

Functional requirements
- Reading a results directory never fails because of one bad file: missing, truncated or
  partially valid records are tolerated and counted as unreadable, keeping whatever status
  fields are still valid.
- A run failed when any target ended ``ran-fail`` or any commit ended ``commit_failed``.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.constants import RESULT_SUFFIX
from repobatch.domain.models import CommitStatus, TargetResult, WorkflowStatus
from repobatch.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from repobatch.domain.models import JSONValue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str | None
    queued: int
    workflow_counts: Mapping[str, int]
    commit_counts: Mapping[str, int]
    unreadable: int = 0
    retry_passes: int = 0
    interrupted: bool = False
    dry_run: bool = False
    locations: Mapping[str, str] = field(default_factory=dict)

    def count(self, status: WorkflowStatus | CommitStatus) -> int:
        if isinstance(status, WorkflowStatus):
            return int(self.workflow_counts.get(status.value, 0))
        return int(self.commit_counts.get(status.value, 0))

    @property
    def failed(self) -> bool:
        return (
            self.count(WorkflowStatus.RAN_FAIL) > 0
            or self.count(CommitStatus.COMMIT_FAILED) > 0
            or self.interrupted
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "queued": self.queued,
            "workflow": dict(self.workflow_counts),
            "commit": dict(self.commit_counts),
            "unreadable": self.unreadable,
            "retry_passes": self.retry_passes,
            "interrupted": self.interrupted,
            "dry_run": self.dry_run,
            "failed": self.failed,
            "locations": dict(self.locations),
        }


def _zeroed() -> tuple[Counter[str], Counter[str]]:
    workflow: Counter[str] = Counter({status.value: 0 for status in WorkflowStatus})
    commit: Counter[str] = Counter({status.value: 0 for status in CommitStatus})
    return workflow, commit


def summarize_results(
    results: Iterable[TargetResult],
    *,
    run_id: str | None = None,
    queued: int | None = None,
    unreadable: int = 0,
    retry_passes: int = 0,
    interrupted: bool = False,
    dry_run: bool = False,
    locations: Mapping[str, str] | None = None,
) -> RunSummary:
    workflow, commit = _zeroed()
    seen = 0
    for result in results:
        seen += 1
        workflow[result.workflow_status.value] += 1
        commit[result.commit_status.value] += 1
    return RunSummary(
        run_id=run_id,
        queued=seen + unreadable if queued is None else queued,
        workflow_counts=dict(workflow),
        commit_counts=dict(commit),
        unreadable=unreadable,
        retry_passes=retry_passes,
        interrupted=interrupted,
        dry_run=dry_run,
        locations=dict(locations or {}),
    )


def summarize_directory(
    results_dir: Path | str,
    *,
    run_id: str | None = None,
    queued: int | None = None,
    retry_passes: int = 0,
    interrupted: bool = False,
    locations: Mapping[str, str] | None = None,
) -> RunSummary:
    """Tally every result record under ``results_dir``; a missing directory tallies zero."""

    directory = Path(results_dir)
    workflow, commit = _zeroed()
    readable = 0
    unreadable = 0

    paths = sorted(directory.glob(f"*{RESULT_SUFFIX}")) if directory.is_dir() else []
    for path in paths:
        statuses = _read_statuses(path)
        if statuses is None:
            unreadable += 1
            continue
        workflow_status, commit_status, complete = statuses
        if workflow_status is not None:
            workflow[workflow_status] += 1
        if commit_status is not None:
            commit[commit_status] += 1
        if complete:
            readable += 1
        else:
            unreadable += 1

    return RunSummary(
        run_id=run_id,
        queued=readable + unreadable if queued is None else queued,
        workflow_counts=dict(workflow),
        commit_counts=dict(commit),
        unreadable=unreadable,
        retry_passes=retry_passes,
        interrupted=interrupted,
        locations=dict(locations or {}),
    )


def _read_statuses(path: Path) -> tuple[str | None, str | None, bool] | None:
    """Return ``(workflow_status, commit_status, fully_valid)`` or ``None`` if unusable."""

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("result file unreadable", extra={"path": str(path), "error": str(exc)})
        return None
    try:
        TargetResult.from_json(raw)
    except ValueError:
        pass
    else:
        data = json.loads(raw)
        return str(data["workflow_status"]), str(data["commit_status"]), True

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("result file truncated or corrupt", extra={"path": str(path)})
        return None
    if not isinstance(data, dict):
        return None

    workflow_values = {status.value for status in WorkflowStatus}
    commit_values = {status.value for status in CommitStatus}
    workflow_status = data.get("workflow_status")
    commit_status = data.get("commit_status")
    workflow_ok = workflow_status if workflow_status in workflow_values else None
    commit_ok = commit_status if commit_status in commit_values else None
    if workflow_ok is None and commit_ok is None:
        return None
    logger.warning("result file partially valid", extra={"path": str(path)})
    return workflow_ok, commit_ok, False


def write_summary(summary: RunSummary, path: Path | str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n")


__all__ = ["RunSummary", "summarize_directory", "summarize_results", "write_summary"]
