"""
repobatch — unit tests for the per-target workflow runner.

Purpose
- Walk every branch of the runner state machine against real git repositories with a
  scripted tool double: success, failure, timeout, unstartable tool, checkpoint skip,
  force, non-repository, transcript fixup, commit failure and dry run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from repobatch.constants import CHECKPOINT_FAILED, CHECKPOINT_SUCCEEDED, TIMEOUT_EXIT_CODE
from repobatch.control_plane.runner import RunnerOptions, WorkflowRunner
from repobatch.domain.models import (
    CommitStatus,
    RunLayout,
    RunnerState,
    Target,
    TargetResult,
    WorkflowStatus,
)
from repobatch.persistence.checkpoint_store import CheckpointStore
from repobatch.persistence.results import MemoryFailureSet, MemoryResultStore
from repobatch.tools.invocation import ToolInvocation, ToolInvocationError, ToolOutcome
from repobatch.workflows import (
    CommandWorkflow,
    ReadmeWorkflow,
    Workflow,
    WorkflowCatalog,
    WorkflowSettings,
)

if TYPE_CHECKING:
    import subprocess
    from collections.abc import Callable
    from pathlib import Path

RUN_ID = "20260102T030405Z-abcd"

README_BODY = "\n".join(
    ["# Alpha toolkit", "", "Alpha frobs widgets.", "", "## Quick start", "Run `alpha --help`."]
)


@dataclass
class ScriptedTool:
    """Tool runner double: records invocations and applies a scripted effect."""

    exit_code: int = 0
    writes: dict[str, str] = field(default_factory=dict)
    transcript: str = "tool output\n"
    raises: Exception | None = None
    timed_out: bool = False
    calls: list[ToolInvocation] = field(default_factory=list)

    def __call__(self, invocation: ToolInvocation) -> ToolOutcome:
        self.calls.append(invocation)
        if self.raises is not None:
            raise self.raises
        if invocation.transcript_path is not None:
            invocation.transcript_path.parent.mkdir(parents=True, exist_ok=True)
            invocation.transcript_path.write_text(self.transcript, encoding="utf-8")
        for relative, content in self.writes.items():
            (invocation.cwd / relative).write_text(content, encoding="utf-8")
        return ToolOutcome(exit_code=self.exit_code, duration_seconds=1.4, timed_out=self.timed_out)


@dataclass
class RecordingProgress:
    started_names: list[str] = field(default_factory=list)
    finished: list[tuple[TargetResult, Path | None]] = field(default_factory=list)

    def started(self, target: Target) -> None:
        self.started_names.append(target.name)

    def finished(self, result: TargetResult, *, log_path: Path | None) -> None:
        self.finished.append((result, log_path))


@dataclass
class Harness:
    runner: WorkflowRunner
    checkpoints: CheckpointStore
    results: MemoryResultStore
    failures: MemoryFailureSet
    layout: RunLayout


def _command_workflow() -> CommandWorkflow:
    return CommandWorkflow(
        WorkflowCatalog.load().get("command"),
        WorkflowSettings(command=("fake-tool", "{target}")),
    )


def _readme_workflow() -> ReadmeWorkflow:
    return ReadmeWorkflow(
        WorkflowCatalog.load().get("readme"),
        WorkflowSettings(model="vendor/model", api_key="sk-or-test-abcdefgh"),
    )


def _harness(
    tmp_path: Path,
    tool: ScriptedTool,
    *,
    workflow: Workflow | None = None,
    dry_run: bool = False,
    force: bool = False,
    progress: RecordingProgress | None = None,
) -> Harness:
    layout = RunLayout(state_dir=tmp_path / "state", run_id=RUN_ID)
    if not dry_run:
        layout.ensure()
    checkpoints = CheckpointStore(layout.checkpoint_path, layout.lock_path, read_only=dry_run)
    results = MemoryResultStore()
    failures = MemoryFailureSet()
    runner = WorkflowRunner(
        workflow or _command_workflow(),
        checkpoints=checkpoints,
        results=results,
        failures=failures,
        layout=None if dry_run else layout,
        options=RunnerOptions(dry_run=dry_run, force=force, timeout_seconds=30),
        progress=progress,
        tool_runner=tool,
    )
    return Harness(runner, checkpoints, results, failures, layout)


def test_successful_tool_commits_and_checkpoints(
    commit_count: Callable[[Path], int],
    tmp_path: Path,
    make_repo: Callable[..., Path],
    git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = make_repo(tmp_path, "alpha")
    tool = ScriptedTool(writes={"out.txt": "generated\n"})
    harness = _harness(tmp_path, tool)
    commits_before = commit_count(repo)

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert result.commit_status is CommitStatus.COMMITTED
    assert result.exit_code == 0
    assert result.states == (
        RunnerState.PENDING,
        RunnerState.SETUP,
        RunnerState.RUN_TOOL,
        RunnerState.TOOL_OK,
        RunnerState.COMMIT_ATTEMPT,
        RunnerState.COMMITTED,
        RunnerState.TERMINAL,
    )
    assert commit_count(repo) == commits_before + 1
    assert git(repo, "status", "--porcelain").stdout == ""

    record = harness.checkpoints.last_record("alpha")
    assert record is not None
    assert record.status == CHECKPOINT_SUCCEEDED
    assert record.tool == "fake-tool"
    assert record.duration_seconds == 1
    assert record.note == f"log={harness.layout.transcript_path(Target.from_path(repo))} fixup=no"
    assert harness.failures.names() == []
    assert harness.results.all() == [result]
    assert tool.calls[0].timeout_seconds == 30
    assert tool.calls[0].cwd == repo.resolve()


def test_successful_tool_without_changes_reports_no_changes(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    harness = _harness(tmp_path, ScriptedTool())

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert result.commit_status is CommitStatus.NO_CHANGES
    assert result.states[-2:] == (RunnerState.NO_CHANGES, RunnerState.TERMINAL)


def test_failed_tool_skips_commit_and_lands_in_failure_set(
    tmp_path: Path, make_repo: Callable[..., Path], commit_count: Callable[[Path], int]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    harness = _harness(tmp_path, ScriptedTool(exit_code=2, writes={"half.txt": "partial\n"}))
    commits_before = commit_count(repo)

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_FAIL
    assert result.commit_status is CommitStatus.SKIPPED
    assert result.exit_code == 2
    assert RunnerState.TOOL_FAILED in result.states
    assert RunnerState.COMMIT_ATTEMPT not in result.states
    assert commit_count(repo) == commits_before
    assert harness.checkpoints.last_status("alpha") == CHECKPOINT_FAILED
    assert harness.checkpoints.last_record("alpha").exit_code == 2  # type: ignore[union-attr]
    assert harness.failures.names() == ["alpha"]


def test_timed_out_tool_is_a_failure_with_note(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    harness = _harness(tmp_path, ScriptedTool(exit_code=TIMEOUT_EXIT_CODE, timed_out=True))

    result = harness.runner.run(Target.from_path(repo))

    assert result.failed
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out after 30s" in result.note
    assert harness.failures.names() == ["alpha"]


def test_unstartable_tool_is_reported_as_127(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    harness = _harness(tmp_path, ScriptedTool(raises=ToolInvocationError("no such file")))

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_FAIL
    assert result.exit_code == 127
    assert "tool not started" in result.note
    assert harness.checkpoints.last_status("alpha") == CHECKPOINT_FAILED


def test_succeeded_checkpoint_skips_tool_without_new_record(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    tool = ScriptedTool()
    harness = _harness(tmp_path, tool)
    harness.checkpoints.append("alpha", CHECKPOINT_SUCCEEDED, tool="fake-tool")

    result = harness.runner.run(Target.from_path(repo))

    assert tool.calls == []
    assert result.workflow_status is WorkflowStatus.SKIPPED_OK
    assert result.commit_status is CommitStatus.NO_CHANGES
    assert RunnerState.SKIPPED_CHECKPOINT in result.states
    assert len(list(harness.checkpoints.records())) == 1


def test_force_reruns_succeeded_targets(tmp_path: Path, make_repo: Callable[..., Path]) -> None:
    repo = make_repo(tmp_path, "alpha")
    tool = ScriptedTool()
    harness = _harness(tmp_path, tool, force=True)
    harness.checkpoints.append("alpha", CHECKPOINT_SUCCEEDED)

    result = harness.runner.run(Target.from_path(repo))

    assert len(tool.calls) == 1
    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert len(list(harness.checkpoints.records())) == 2


def test_failed_checkpoint_does_not_skip(tmp_path: Path, make_repo: Callable[..., Path]) -> None:
    repo = make_repo(tmp_path, "alpha")
    tool = ScriptedTool()
    harness = _harness(tmp_path, tool)
    harness.checkpoints.append("alpha", CHECKPOINT_FAILED, exit_code=1)

    result = harness.runner.run(Target.from_path(repo))

    assert len(tool.calls) == 1
    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert harness.checkpoints.last_status("alpha") == CHECKPOINT_SUCCEEDED


def test_non_repository_is_skipped_untouched(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    tool = ScriptedTool()
    harness = _harness(tmp_path, tool, workflow=_readme_workflow())

    result = harness.runner.run(Target.from_path(plain))

    assert result.workflow_status is WorkflowStatus.SKIPPED_NON_TARGET
    assert result.commit_status is CommitStatus.SKIPPED
    assert result.states == (
        RunnerState.PENDING,
        RunnerState.SKIPPED_NON_TARGET,
        RunnerState.TERMINAL,
    )
    assert tool.calls == []
    assert list(plain.iterdir()) == []
    assert harness.checkpoints.snapshot() == {}


def test_lost_edit_is_recovered_from_transcript(
    tmp_path: Path,
    make_repo: Callable[..., Path],
    git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = make_repo(tmp_path, "alpha")
    transcript = f"Thinking...\nREADME.md\n```markdown\n{README_BODY}\n```\nTokens: 2k\n"
    harness = _harness(tmp_path, ScriptedTool(transcript=transcript), workflow=_readme_workflow())

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert result.fixup_applied
    assert RunnerState.VERIFY in result.states
    assert RunnerState.FIXUP in result.states
    assert (repo / "README.md").read_text(encoding="utf-8") == README_BODY + "\n"
    assert result.commit_status is CommitStatus.COMMITTED
    assert harness.checkpoints.last_record("alpha").note.endswith("fixup=yes")  # type: ignore[union-attr]
    assert git(repo, "status", "--porcelain").stdout == ""


def test_tool_edit_is_kept_over_transcript(tmp_path: Path, make_repo: Callable[..., Path]) -> None:
    repo = make_repo(tmp_path, "alpha")
    transcript = f"README.md\n```markdown\n{README_BODY}\n```\n"
    tool = ScriptedTool(transcript=transcript, writes={"README.md": "# Written by tool\n"})
    harness = _harness(tmp_path, tool, workflow=_readme_workflow())

    result = harness.runner.run(Target.from_path(repo))

    assert not result.fixup_applied
    assert RunnerState.VERIFY in result.states
    assert RunnerState.FIXUP not in result.states
    assert (repo / "README.md").read_text(encoding="utf-8") == "# Written by tool\n"


def test_unrecoverable_unchanged_artifact_is_not_an_error(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    harness = _harness(tmp_path, ScriptedTool(transcript="no blocks here\n"), workflow=_readme_workflow())

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert not result.fixup_applied
    assert result.commit_status is CommitStatus.COMMITTED


def test_commit_failure_keeps_tool_success(tmp_path: Path, make_repo: Callable[..., Path]) -> None:
    repo = make_repo(tmp_path, "alpha")
    hook = repo / ".git" / "hooks" / "pre-commit"
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text("#!/bin/sh\nexit 1\n", encoding="utf-8")
    hook.chmod(0o755)
    harness = _harness(tmp_path, ScriptedTool(writes={"out.txt": "x\n"}))

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert result.commit_status is CommitStatus.COMMIT_FAILED
    assert "commit failed" in result.note
    assert harness.checkpoints.last_status("alpha") == CHECKPOINT_SUCCEEDED
    assert harness.failures.names() == []


def test_dry_run_executes_and_persists_nothing(
    tmp_path: Path,
    make_repo: Callable[..., Path],
    git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = make_repo(tmp_path, "alpha")
    tool = ScriptedTool(writes={"out.txt": "x\n"})
    harness = _harness(tmp_path, tool, workflow=_readme_workflow(), dry_run=True)

    result = harness.runner.run(Target.from_path(repo))

    assert tool.calls == []
    assert result.workflow_status is WorkflowStatus.RAN_OK
    assert result.commit_status is CommitStatus.DRY_RUN
    assert not (repo / "LICENSE").exists()
    assert not (repo / ".gitignore").exists()
    assert not harness.layout.state_dir.exists()
    assert git(repo, "status", "--porcelain").stdout == ""


def test_dry_run_reports_checkpoint_skips(tmp_path: Path, make_repo: Callable[..., Path]) -> None:
    repo = make_repo(tmp_path, "alpha")
    layout = RunLayout(state_dir=tmp_path / "state", run_id=RUN_ID)
    CheckpointStore(layout.checkpoint_path, layout.lock_path).append("alpha", CHECKPOINT_SUCCEEDED)
    harness = _harness(tmp_path, ScriptedTool(), dry_run=True)

    result = harness.runner.run(Target.from_path(repo))

    assert result.workflow_status is WorkflowStatus.SKIPPED_OK
    assert result.commit_status is CommitStatus.DRY_RUN
    assert len(list(harness.checkpoints.records())) == 1


def test_progress_sink_sees_start_and_finish(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    repo = make_repo(tmp_path, "alpha")
    progress = RecordingProgress()
    harness = _harness(tmp_path, ScriptedTool(exit_code=1), progress=progress)
    target = Target.from_path(repo)

    result = harness.runner.run(target, attempt=2)

    assert progress.started_names == ["alpha"]
    assert progress.finished == [(result, harness.layout.transcript_path(target))]
    assert result.attempt == 2


def test_record_crash_marks_target_failed(tmp_path: Path) -> None:
    harness = _harness(tmp_path, ScriptedTool())
    target = Target.from_path(tmp_path / "alpha")

    result = harness.runner.record_crash(target, attempt=1, error=KeyError("boom"))

    assert result.workflow_status is WorkflowStatus.RAN_FAIL
    assert result.commit_status is CommitStatus.SKIPPED
    assert "internal error: KeyError" in result.note
    assert harness.failures.names() == ["alpha"]
    assert harness.results.all() == [result]


def test_layout_is_required_outside_dry_run(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="run layout is required"):
        WorkflowRunner(
            _command_workflow(),
            checkpoints=CheckpointStore(tmp_path / "s.tsv", tmp_path / "s.lock"),
            results=MemoryResultStore(),
            failures=MemoryFailureSet(),
            layout=None,
        )
