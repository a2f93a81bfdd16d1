"""
repobatch: batch controller

Purpose
- Wire one run end to end: preflight -> discovery -> scheduler passes with retry -> summary.

Functional requirements
- Configuration problems (missing credential, bad root, missing tool binary) surface as
  ``RunConfigurationError`` before any target is touched.
- Dry runs create no files: no state directory, no logs, no results, no lock file.
- Logging is shut down on every exit path.
"""

from __future__ import annotations

import dataclasses
import logging
import shutil
from collections.abc import Callable, Collection, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from repobatch.constants import RESULTS_DIRNAME, STATE_DIR_NAME
from repobatch.control_plane.discovery import discover_targets
from repobatch.control_plane.retry import RetryCoordinator, RetryPolicy
from repobatch.control_plane.runner import ProgressSink, RunnerOptions, WorkflowRunner
from repobatch.control_plane.scheduler import PassReport, Scheduler, default_jobs
from repobatch.control_plane.summary import (
    RunSummary,
    summarize_directory,
    summarize_results,
    write_summary,
)
from repobatch.domain import ids
from repobatch.domain.models import RunLayout
from repobatch.observability.logging import correlation_scope, setup_logging, shutdown_logging
from repobatch.persistence.checkpoint_store import CheckpointStore
from repobatch.persistence.results import (
    FileFailureSet,
    FileResultStore,
    MemoryFailureSet,
    MemoryResultStore,
)
from repobatch.tools.invocation import ToolInvocation, ToolOutcome, run_tool
from repobatch.utils.concurrency import CancellationToken
from repobatch.workflows import Workflow, WorkflowCatalog, WorkflowSettings, build_workflow

logger = logging.getLogger(__name__)

DEFAULT_ROOT_DIRNAME = "repo"


class RunConfigurationError(ValueError):
    """Raised when a run cannot start with the effective settings."""


@dataclass(frozen=True, slots=True)
class RunPlan:
    """Resolved inputs of one run, produced before anything touches disk."""

    root: Path
    layout: RunLayout
    workflow: Workflow
    jobs: int
    dry_run: bool


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Normalized result returned by ``BatchController.run``."""

    run_id: str
    summary: RunSummary
    passes: tuple[PassReport, ...]
    layout: RunLayout
    dry_run: bool

    @property
    def interrupted(self) -> bool:
        return any(report.interrupted for report in self.passes)

    @property
    def exit_code(self) -> int:
        return 1 if self.summary.failed else 0


def default_root(cwd: Path | None = None) -> Path:
    """``./repo`` when it exists, otherwise the invocation directory itself."""

    base = (cwd or Path.cwd()).resolve()
    candidate = base / DEFAULT_ROOT_DIRNAME
    return candidate if candidate.is_dir() else base


def resolve_root(config: Mapping[str, object], *, cwd: Path | None = None) -> Path:
    configured = _nested_get(config, ("paths", "root"), None)
    if isinstance(configured, str) and configured.strip():
        return Path(configured).expanduser().resolve()
    return default_root(cwd)


def resolve_state_dir(config: Mapping[str, object], root: Path) -> Path:
    configured = _nested_get(config, ("paths", "state_dir"), None)
    if isinstance(configured, str) and configured.strip():
        return Path(configured).expanduser().resolve()
    return root / STATE_DIR_NAME


def list_run_ids(state_dir: Path) -> list[str]:
    """Run ids with a results directory, oldest first."""

    results_root = state_dir / RESULTS_DIRNAME
    if not results_root.is_dir():
        return []
    found: list[str] = []
    for entry in results_root.iterdir():
        if not entry.is_dir():
            continue
        try:
            ids.validate_run_id(entry.name)
        except ValueError:
            continue
        found.append(entry.name)
    return sorted(found)


class BatchController:
    """Runs one workflow over every target under the configured root."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        api_key: str | None = None,
        command: Sequence[str] = (),
        catalog: WorkflowCatalog | None = None,
        progress: ProgressSink | None = None,
        tool_runner: Callable[[ToolInvocation], ToolOutcome] = run_tool,
        handle_interrupt: bool = False,
        run_id: str | None = None,
        cwd: Path | None = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._cwd = (cwd or Path.cwd()).resolve()
        self._command = _absolutize_command(tuple(command), self._cwd)
        self._catalog = catalog
        self._progress = progress
        self._tool_runner = tool_runner
        self._handle_interrupt = handle_interrupt
        self._run_id = run_id

    @property
    def dry_run(self) -> bool:
        return bool(_nested_get(self._config, ("run", "dry_run"), False))

    def build_workflow(self) -> Workflow:
        """Resolve and validate the configured workflow; raises ``RunConfigurationError``."""

        catalog_path = _nested_get(self._config, ("paths", "workflow_catalog"), None)
        catalog = self._catalog or WorkflowCatalog.load(catalog_path)
        definition = catalog.get(str(_nested_get(self._config, ("run", "workflow"), "readme")))

        commit_message = _nested_get(self._config, ("git", "commit_message"), None)
        if isinstance(commit_message, str) and commit_message.strip():
            definition = dataclasses.replace(definition, commit_message=commit_message.strip())

        binary = _nested_get(self._config, ("tool", "binary"), None)
        settings = WorkflowSettings(
            model=str(_nested_get(self._config, ("tool", "model"), "")),
            api_key=self._api_key,
            binary=binary if isinstance(binary, str) else None,
            extra_args=tuple(_nested_get(self._config, ("tool", "extra_args"), ()) or ()),
            command=self._command,
        )
        workflow = build_workflow(definition, settings)
        try:
            workflow.validate()
        except ValueError as exc:
            raise RunConfigurationError(str(exc)) from exc
        return workflow

    def prepare(self) -> RunPlan:
        """Resolve everything a run needs and fail fast on configuration problems.

        Nothing is written to disk here.
        """

        dry_run = self.dry_run
        root = resolve_root(self._config, cwd=self._cwd)
        if not root.is_dir():
            raise RunConfigurationError(f"target root is not a directory: {root}")

        workflow = self.build_workflow()
        if not dry_run:
            self._preflight(workflow)

        layout = RunLayout(
            state_dir=resolve_state_dir(self._config, root),
            run_id=self._run_id or ids.generate_run_id(),
        )
        jobs = _nested_get(self._config, ("run", "jobs"), None) or default_jobs()
        return RunPlan(root=root, layout=layout, workflow=workflow, jobs=int(jobs), dry_run=dry_run)

    def run(self, plan: RunPlan | None = None, *, only: Collection[str] = ()) -> RunOutcome:
        plan = plan or self.prepare()
        layout = plan.layout
        if not plan.dry_run:
            layout.ensure()

        handle = setup_logging(
            _nested_get(self._config, ("observability",), {}),
            run_id=layout.run_id,
            log_dir=None if plan.dry_run else layout.log_dir,
            force_stderr=plan.dry_run,
        )
        try:
            with correlation_scope(workflow=plan.workflow.name):
                return self._execute(plan, only=only)
        finally:
            shutdown_logging(handle)

    def _execute(self, plan: RunPlan, *, only: Collection[str]) -> RunOutcome:
        layout = plan.layout
        dry_run = plan.dry_run
        retries = int(_nested_get(self._config, ("run", "retry"), 0))
        logger.info(
            "run started",
            extra={
                "root": str(plan.root),
                "state_dir": str(layout.state_dir),
                "jobs": plan.jobs,
                "retry": retries,
                "dry_run": dry_run,
            },
        )

        targets = discover_targets(plan.root, exclude=(layout.state_dir,), only=only)

        checkpoints = CheckpointStore(layout.checkpoint_path, layout.lock_path, read_only=dry_run)
        if dry_run:
            results: MemoryResultStore | FileResultStore = MemoryResultStore()
            failures: MemoryFailureSet | FileFailureSet = MemoryFailureSet()
        else:
            results = FileResultStore(layout)
            failures = FileFailureSet(layout.failure_set_path, layout.lock_path)

        timeout = int(_nested_get(self._config, ("run", "timeout_seconds"), 0))
        runner = WorkflowRunner(
            plan.workflow,
            checkpoints=checkpoints,
            results=results,
            failures=failures,
            layout=None if dry_run else layout,
            options=RunnerOptions(
                dry_run=dry_run,
                force=bool(_nested_get(self._config, ("run", "force"), False)),
                timeout_seconds=timeout if timeout > 0 else None,
                ensure_identity=bool(_nested_get(self._config, ("git", "ensure_identity"), False)),
            ),
            progress=self._progress,
            tool_runner=self._tool_runner,
        )
        scheduler = Scheduler(
            runner,
            jobs=plan.jobs,
            cancel_token=CancellationToken(),
            handle_interrupt=self._handle_interrupt,
        )
        policy = RetryPolicy(
            retries=retries,
            all_passes=bool(_nested_get(self._config, ("run", "retry_all_passes"), False)),
        )
        report = RetryCoordinator(scheduler, failures, policy).run(targets)

        if dry_run:
            summary = summarize_results(
                report.final_results,
                run_id=layout.run_id,
                queued=len(targets),
                retry_passes=report.retry_passes,
                interrupted=report.interrupted,
                dry_run=True,
            )
        else:
            summary = summarize_directory(
                layout.target_results_dir,
                run_id=layout.run_id,
                queued=len(targets),
                retry_passes=report.retry_passes,
                interrupted=report.interrupted,
                locations={
                    "checkpoints": str(layout.checkpoint_path),
                    "logs": str(layout.log_dir),
                    "results": str(layout.results_dir),
                },
            )
            write_summary(summary, layout.summary_path)
            _remove_scratch(layout.tmp_dir)

        logger.info(
            "run finished",
            extra={
                "workflow_counts": dict(summary.workflow_counts),
                "commit_counts": dict(summary.commit_counts),
                "failed": summary.failed,
            },
        )
        return RunOutcome(
            run_id=layout.run_id,
            summary=summary,
            passes=report.passes,
            layout=layout,
            dry_run=dry_run,
        )

    def _preflight(self, workflow: Workflow) -> None:
        executable = workflow.executable
        if executable is not None and shutil.which(executable) is None:
            raise RunConfigurationError(f"tool executable not found: {executable}")
        if shutil.which("git") is None:
            raise RunConfigurationError("git executable not found on PATH")


def _absolutize_command(command: tuple[str, ...], cwd: Path) -> tuple[str, ...]:
    # Targets run with their own cwd, so a relative script path must be pinned first.
    if not command or "/" not in command[0] or Path(command[0]).is_absolute():
        return command
    candidate = cwd / command[0]
    if not candidate.exists():
        return command
    return (str(candidate.resolve()), *command[1:])


def _remove_scratch(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning("scratch directory not removed", extra={"path": str(path), "error": str(exc)})


def _nested_get(config: Mapping[str, object], path: tuple[str, ...], default: Any) -> Any:
    cursor: object = config
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return default
        cursor = cursor[part]
    return cursor


__all__ = [
    "BatchController",
    "DEFAULT_ROOT_DIRNAME",
    "RunConfigurationError",
    "RunOutcome",
    "RunPlan",
    "default_root",
    "list_run_ids",
    "resolve_root",
    "resolve_state_dir",
]
