"""
repobatch: per-target workflow runner

Purpose
- Drive one target through setup, the checkpoint gate, the tool, verify/fixup and commit.

Functional requirements
- A target whose last checkpoint is the success sentinel is not re-run unless forced; the
  skip path appends no checkpoint record.
- A failed tool run appends a failure checkpoint, lands the target in the failure set and
  skips the commit.
- Dry runs execute nothing and persist nothing.
- Setup and commit problems degrade the result; checkpoint failures propagate.

Key interfaces
- ``WorkflowRunner.run(target, attempt=...) -> TargetResult``
- ``WorkflowRunner.record_crash(...)`` for exceptions caught at the scheduler boundary.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from repobatch.constants import CHECKPOINT_FAILED, CHECKPOINT_SUCCEEDED, DEFAULT_TIMEOUT_SECONDS
from repobatch.domain.models import CommitStatus, RunnerState, TargetResult, WorkflowStatus
from repobatch.integration_plane.git_engine import (
    CommitOutcome,
    GitEngine,
    GitEngineError,
    is_repository,
)
from repobatch.observability.logging import correlation_scope
from repobatch.persistence.checkpoint_store import CheckpointStoreError
from repobatch.tools.invocation import ToolInvocationError, ToolOutcome, run_tool
from repobatch.utils.fs import atomic_write
from repobatch.utils.hashing import MISSING_FINGERPRINT, fingerprint_file, sha256_text

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from repobatch.domain.models import RunLayout, Target
    from repobatch.persistence.checkpoint_store import CheckpointStore
    from repobatch.persistence.results import FailureSet, ResultStore
    from repobatch.tools.invocation import ToolInvocation
    from repobatch.workflows.base import Workflow

logger = logging.getLogger(__name__)

# Exit code reported when the tool binary could not be started at all (shell convention).
_NOT_STARTED_EXIT_CODE = 127


class ProgressSink(Protocol):
    def started(self, target: Target) -> None: ...

    def finished(self, result: TargetResult, *, log_path: Path | None) -> None: ...


@dataclass(frozen=True, slots=True)
class RunnerOptions:
    dry_run: bool = False
    force: bool = False
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS
    ensure_identity: bool = False


@dataclass(slots=True)
class _Trace:
    """Mutable per-target scratch state while the runner walks its states."""

    target: Target
    attempt: int
    started: float
    states: list[RunnerState]
    notes: list[str]
    workflow_status: WorkflowStatus | None = None
    commit_status: CommitStatus | None = None
    exit_code: int | None = None
    fixup_applied: bool = False

    def enter(self, state: RunnerState) -> None:
        self.states.append(state)
        logger.debug("state", extra={"state": state.value})

    def to_result(self) -> TargetResult:
        assert self.workflow_status is not None
        assert self.commit_status is not None
        return TargetResult(
            target_id=self.target.target_id,
            name=self.target.name,
            workflow_status=self.workflow_status,
            commit_status=self.commit_status,
            exit_code=self.exit_code,
            duration_seconds=max(0.0, time.monotonic() - self.started),
            fixup_applied=self.fixup_applied,
            attempt=self.attempt,
            note="; ".join(self.notes)[:4096],
            states=tuple(self.states),
        )


class WorkflowRunner:
    """Runs one workflow against one target at a time; safe to call from many threads."""

    def __init__(
        self,
        workflow: Workflow,
        *,
        checkpoints: CheckpointStore,
        results: ResultStore,
        failures: FailureSet,
        layout: RunLayout | None,
        options: RunnerOptions | None = None,
        progress: ProgressSink | None = None,
        tool_runner: Callable[[ToolInvocation], ToolOutcome] = run_tool,
    ) -> None:
        self.workflow = workflow
        self.checkpoints = checkpoints
        self.results = results
        self.failures = failures
        self.layout = layout
        self.options = options or RunnerOptions()
        self.progress = progress
        self._tool_runner = tool_runner
        if not self.options.dry_run and layout is None:
            raise ValueError("a run layout is required unless dry_run is set")

    def run(self, target: Target, *, attempt: int = 1) -> TargetResult:
        with correlation_scope(
            target_id=target.target_id, pass_index=str(attempt), workflow=self.workflow.name
        ):
            if self.progress is not None:
                self.progress.started(target)
            trace = _Trace(
                target=target,
                attempt=attempt,
                started=time.monotonic(),
                states=[RunnerState.PENDING],
                notes=[],
            )
            self._drive(trace)
            trace.enter(RunnerState.TERMINAL)
            result = trace.to_result()
            self._persist_result(result)
            logger.info(
                "target finished",
                extra={
                    "workflow_status": result.workflow_status.value,
                    "commit_status": result.commit_status.value,
                    "exit_code": result.exit_code,
                },
            )
            if self.progress is not None:
                self.progress.finished(result, log_path=self._transcript_path(target))
            return result

    def record_crash(self, target: Target, *, attempt: int, error: BaseException) -> TargetResult:
        """Record an unexpected exception from ``run`` as a failed, retryable target."""

        with correlation_scope(target_id=target.target_id, pass_index=str(attempt)):
            result = TargetResult(
                target_id=target.target_id,
                name=target.name,
                workflow_status=WorkflowStatus.RAN_FAIL,
                commit_status=CommitStatus.SKIPPED,
                attempt=attempt,
                note=f"internal error: {type(error).__name__}: {error}"[:4096],
                states=(RunnerState.PENDING, RunnerState.TERMINAL),
            )
            self._add_failure(target)
            self._persist_result(result)
            if self.progress is not None:
                self.progress.finished(result, log_path=None)
            return result

    def _drive(self, trace: _Trace) -> None:
        target = trace.target

        if self.workflow.requires_repository and not is_repository(target.path):
            trace.enter(RunnerState.SKIPPED_NON_TARGET)
            trace.workflow_status = WorkflowStatus.SKIPPED_NON_TARGET
            trace.commit_status = CommitStatus.SKIPPED
            return

        trace.enter(RunnerState.SETUP)
        if not self.options.dry_run:
            self._setup(trace)

        last_status = self.checkpoints.last_status(target.name)
        if last_status == CHECKPOINT_SUCCEEDED and not self.options.force:
            trace.enter(RunnerState.SKIPPED_CHECKPOINT)
            trace.workflow_status = WorkflowStatus.SKIPPED_OK
        else:
            if not self._run_tool(trace):
                trace.commit_status = CommitStatus.SKIPPED
                return

        self._commit(trace)

    def _setup(self, trace: _Trace) -> None:
        try:
            report = self.workflow.setup(trace.target)
        except OSError as exc:
            logger.warning("setup failed", extra={"error": str(exc)})
            trace.notes.append(f"setup failed: {exc}")
            return
        if report.changed:
            logger.info("setup changed files", extra={"files": report.changed})
        for problem in report.problems:
            trace.notes.append(f"setup: {problem}")

    def _run_tool(self, trace: _Trace) -> bool:
        """Run the tool and the verify/fixup step. Returns ``True`` when the tool succeeded."""

        target = trace.target
        trace.enter(RunnerState.RUN_TOOL)

        if self.options.dry_run:
            trace.exit_code = 0
            trace.enter(RunnerState.TOOL_OK)
            trace.workflow_status = WorkflowStatus.RAN_OK
            return True

        artifact = self.workflow.artifact_path(target)
        before = fingerprint_file(artifact) if artifact is not None else None
        transcript_path = self._transcript_path(target)
        outcome = self._invoke(trace, transcript_path)
        trace.exit_code = outcome.exit_code
        duration = int(round(outcome.duration_seconds))

        if not outcome.ok:
            trace.enter(RunnerState.TOOL_FAILED)
            trace.workflow_status = WorkflowStatus.RAN_FAIL
            if outcome.timed_out:
                trace.notes.append(f"timed out after {self.options.timeout_seconds}s")
            self.checkpoints.append(
                target.name,
                CHECKPOINT_FAILED,
                duration_seconds=duration,
                exit_code=outcome.exit_code,
                tool=self.workflow.tool_id,
                note=self._checkpoint_note(transcript_path, fixup=False),
            )
            self._add_failure(target)
            logger.warning("tool failed", extra={"exit_code": outcome.exit_code})
            return False

        trace.enter(RunnerState.TOOL_OK)
        if artifact is not None and before is not None:
            trace.enter(RunnerState.VERIFY)
            trace.fixup_applied = self._verify_and_fixup(trace, artifact, before, transcript_path)

        self.checkpoints.append(
            target.name,
            CHECKPOINT_SUCCEEDED,
            duration_seconds=duration,
            exit_code=outcome.exit_code,
            tool=self.workflow.tool_id,
            note=self._checkpoint_note(transcript_path, fixup=trace.fixup_applied),
        )
        trace.workflow_status = WorkflowStatus.RAN_OK
        return True

    def _invoke(self, trace: _Trace, transcript_path: Path | None) -> ToolOutcome:
        target = trace.target
        scratch_dir = self.layout.target_tmp_dir(target) if self.layout is not None else None
        try:
            invocation = self.workflow.build_invocation(
                target, transcript_path=transcript_path, scratch_dir=scratch_dir
            ).with_timeout(self.options.timeout_seconds)
            return self._tool_runner(invocation)
        except (ToolInvocationError, OSError) as exc:
            logger.error("tool could not be started", extra={"error": str(exc)})
            trace.notes.append(f"tool not started: {exc}")
            return ToolOutcome(exit_code=_NOT_STARTED_EXIT_CODE, duration_seconds=0.0)

    def _verify_and_fixup(
        self,
        trace: _Trace,
        artifact: Path,
        before: str,
        transcript_path: Path | None,
    ) -> bool:
        after = fingerprint_file(artifact)
        if after != before or transcript_path is None:
            return False

        try:
            transcript = transcript_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return False
        candidate = self.workflow.recover(transcript)
        if not candidate:
            logger.info("artifact unchanged and nothing recoverable from transcript")
            return False
        if after != MISSING_FINGERPRINT and sha256_text(candidate) == after:
            return False

        trace.enter(RunnerState.FIXUP)
        try:
            artifact.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(artifact, candidate)
        except OSError as exc:
            logger.warning("fixup write failed", extra={"error": str(exc)})
            trace.notes.append(f"fixup failed: {exc}")
            return False
        logger.info("artifact recovered from transcript", extra={"artifact": str(artifact)})
        return True

    def _commit(self, trace: _Trace) -> None:
        target = trace.target
        if self.options.dry_run:
            trace.commit_status = CommitStatus.DRY_RUN
            return
        if not is_repository(target.path):
            trace.commit_status = CommitStatus.SKIPPED
            return

        trace.enter(RunnerState.COMMIT_ATTEMPT)
        engine = GitEngine(target.path)
        try:
            if self.options.ensure_identity:
                engine.ensure_identity()
            outcome = engine.commit_all(self.workflow.commit_message)
        except GitEngineError as exc:
            trace.enter(RunnerState.COMMIT_FAILED)
            trace.commit_status = CommitStatus.COMMIT_FAILED
            trace.notes.append(f"commit failed: {exc}")
            logger.warning("commit failed", extra={"error": str(exc)})
            return

        if outcome.outcome is CommitOutcome.COMMITTED:
            trace.enter(RunnerState.COMMITTED)
            trace.commit_status = CommitStatus.COMMITTED
            logger.info("committed", extra={"commit": outcome.commit, "paths": outcome.staged_paths})
        else:
            trace.enter(RunnerState.NO_CHANGES)
            trace.commit_status = CommitStatus.NO_CHANGES

    def _add_failure(self, target: Target) -> None:
        try:
            self.failures.add(target.name)
        except OSError as exc:
            raise CheckpointStoreError(f"failed to record failure for {target.name!r}: {exc}") from exc

    def _persist_result(self, result: TargetResult) -> None:
        try:
            self.results.write(result)
        except OSError as exc:
            logger.error("result record not written", extra={"error": str(exc)})

    def _transcript_path(self, target: Target) -> Path | None:
        if self.options.dry_run or self.layout is None:
            return None
        return self.layout.transcript_path(target)

    @staticmethod
    def _checkpoint_note(transcript_path: Path | None, *, fixup: bool) -> str:
        log = "-" if transcript_path is None else str(transcript_path)
        return f"log={log} fixup={'yes' if fixup else 'no'}"


__all__ = ["ProgressSink", "RunnerOptions", "WorkflowRunner"]
