"""Output rendering for the repobatch CLI.

Purpose
- Provide a thin rendering layer for human-readable CLI output.
- Print per-target progress lines that stay whole when several workers finish at once.

Functional requirements
- Plain-text rendering must always work without external dependencies.
- Progress and summary text never carries credentials; free text is passed through the
  log redactor before it is printed.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from repobatch.domain.models import CommitStatus, WorkflowStatus
from repobatch.observability.logging import redact_text

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from repobatch.control_plane.summary import RunSummary
    from repobatch.domain.models import Target, TargetResult

# Width of the label column in the summary block.
_LABEL_WIDTH = 24


class CLIRenderer:
    """Thin CLI output renderer producing clean, deterministic plain text.

    Every method writes whole lines under one lock so output from worker threads never
    interleaves mid-line.
    """

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose
        self._lock = threading.Lock()

    def _emit(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, flush=True)

    def kv(self, key: str, value: object) -> None:
        self._emit(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._emit(line)

    def blank(self) -> None:
        self._emit("")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        lines: list[str] = []
        if title:
            lines.extend(["", title])
        lines.append(f"  {_pad(list(headers))}")
        lines.append(f"  {'  '.join('-' * w for w in widths)}")
        lines.extend(f"  {_pad(list(row))}" for row in rows)
        self._emit(*lines)


class ProgressPrinter:
    """Progress sink printing ``START``/``DONE`` lines for each target."""

    def __init__(self, renderer: CLIRenderer) -> None:
        self._renderer = renderer

    def started(self, target: Target) -> None:
        self._renderer.text(f"START  {target.name}")

    def finished(self, result: TargetResult, *, log_path: Path | None) -> None:
        self._renderer.text(f"DONE   {result.name} ({describe_result(result, log_path=log_path)})")


def describe_result(result: TargetResult, *, log_path: Path | None = None) -> str:
    """One-line status detail for a finished target."""

    parts = [f"status={result.workflow_status.value}"]
    if result.exit_code is not None:
        parts.append(f"rc={result.exit_code}")
    parts.append(f"commit={result.commit_status.value}")
    if result.fixup_applied:
        parts.append("fixup=yes")
    if result.attempt > 1:
        parts.append(f"attempt={result.attempt}")
    parts.append(f"dur={int(round(result.duration_seconds))}s")
    if result.failed and log_path is not None:
        parts.append(f"log={log_path}")
    if result.failed and result.note:
        parts.append(f"note={result.note}")
    return redact_text(", ".join(parts))


def render_run_header(
    renderer: CLIRenderer,
    *,
    run_id: str,
    root: Path,
    jobs: int,
    workflow: str,
    dry_run: bool,
    log_dir: Path | None,
    checkpoint_path: Path,
) -> None:
    renderer.kv("Run id", run_id)
    renderer.kv("Workflow", workflow)
    renderer.kv("Repo root", root)
    renderer.kv("Jobs", jobs)
    if dry_run:
        renderer.kv("Mode", "dry run (nothing is executed or written)")
    else:
        renderer.kv("Logs", log_dir)
    renderer.kv("Checkpoint", checkpoint_path)
    renderer.blank()


def render_summary(renderer: CLIRenderer, summary: RunSummary) -> None:
    """Print the aggregated summary block."""

    def row(label: str, value: object) -> str:
        return f"{label + ':':<{_LABEL_WIDTH}}{value}"

    lines = [
        "",
        "==================== Summary ====================",
        row("Queued folders", summary.queued),
        row("Non-repos skipped", summary.count(WorkflowStatus.SKIPPED_NON_TARGET)),
        "",
        row("Tool OK", summary.count(WorkflowStatus.RAN_OK)),
        row("Tool FAIL", summary.count(WorkflowStatus.RAN_FAIL)),
        row("Tool skipped (OK)", summary.count(WorkflowStatus.SKIPPED_OK)),
        "",
        row("Commits made", summary.count(CommitStatus.COMMITTED)),
        row("No changes to commit", summary.count(CommitStatus.NO_CHANGES)),
        row("Commit failures", summary.count(CommitStatus.COMMIT_FAILED)),
    ]
    if summary.dry_run:
        lines.append(row("Dry-run commits", summary.count(CommitStatus.DRY_RUN)))
    if summary.retry_passes:
        lines.append(row("Retry passes", summary.retry_passes))
    if summary.unreadable:
        lines.append(row("Unreadable results", summary.unreadable))
    if summary.interrupted:
        lines.append(row("Interrupted", "yes"))
    labels = {"logs": "Logs folder", "results": "Results folder", "checkpoints": "Checkpoint file"}
    if summary.locations:
        lines.append("")
        for key, label in labels.items():
            if key in summary.locations:
                lines.append(row(label, summary.locations[key]))
    renderer.text("\n".join(lines))


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(verbose=verbose)


__all__ = [
    "CLIRenderer",
    "ProgressPrinter",
    "create_renderer",
    "describe_result",
    "render_run_header",
    "render_summary",
]
