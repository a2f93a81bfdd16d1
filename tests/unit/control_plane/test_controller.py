"""
repobatch — unit tests for the batch controller.

Purpose
- Cover preflight failures, dry-run purity, discovery wiring and the on-disk run
  artifacts with an injected tool runner so no real tool is launched.
"""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any

import pytest

from repobatch.config.schema import default_config
from repobatch.control_plane.controller import (
    BatchController,
    RunConfigurationError,
    default_root,
    list_run_ids,
    resolve_state_dir,
)
from repobatch.domain.models import CommitStatus, WorkflowStatus
from repobatch.persistence.checkpoint_store import CheckpointStore
from repobatch.persistence.results import FileFailureSet
from repobatch.tools.invocation import ToolInvocation, ToolOutcome

if TYPE_CHECKING:
    import subprocess
    from collections.abc import Callable
    from pathlib import Path

RUN_ID = "20260102T030405Z-abcd"


class RecordingTool:
    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.failing = failing
        self.calls: list[ToolInvocation] = []

    def __call__(self, invocation: ToolInvocation) -> ToolOutcome:
        self.calls.append(invocation)
        if invocation.cwd.name in self.failing:
            return ToolOutcome(exit_code=1, duration_seconds=0.1)
        (invocation.cwd / "touched.txt").write_text("touched\n", encoding="utf-8")
        return ToolOutcome(exit_code=0, duration_seconds=0.1)


def _config(root: Path, **run: object) -> dict[str, Any]:
    config: dict[str, Any] = dict(default_config())
    config["paths"] = {"root": str(root)}
    config["run"] = {**config["run"], **run}
    return config


def _tree(root: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file() and ".git" not in path.relative_to(root).parts
    }


@pytest.fixture
def workspace(tmp_path: Path, make_repo: Callable[..., Path]) -> Path:
    root = tmp_path / "repos"
    root.mkdir()
    make_repo(root, "alpha")
    make_repo(root, "beta")
    (root / "notes").mkdir()
    (root / "notes" / "todo.txt").write_text("later\n", encoding="utf-8")
    (root / "stray.txt").write_text("not a directory\n", encoding="utf-8")
    return root


def test_dry_run_touches_nothing(
    workspace: Path, commit_count: Callable[[Path], int]
) -> None:
    before = _tree(workspace)
    commits = {name: commit_count(workspace / name) for name in ("alpha", "beta")}
    tool = RecordingTool()
    controller = BatchController(
        _config(workspace, dry_run=True, jobs=2),
        api_key="sk-or-test-1234567890",
        tool_runner=tool,
        run_id=RUN_ID,
    )

    outcome = controller.run()

    assert tool.calls == []
    assert outcome.exit_code == 0
    assert outcome.dry_run
    assert not (workspace / ".repobatch").exists()
    assert _tree(workspace) == before
    assert {name: commit_count(workspace / name) for name in commits} == commits
    summary = outcome.summary
    assert summary.dry_run
    assert summary.queued == 3
    assert summary.count(WorkflowStatus.RAN_OK) == 2
    assert summary.count(WorkflowStatus.SKIPPED_NON_TARGET) == 1
    assert summary.count(CommitStatus.DRY_RUN) == 2


def test_dry_run_skips_tool_preflight(workspace: Path) -> None:
    config = _config(workspace, dry_run=True)
    config["tool"] = {**config["tool"], "binary": "definitely-not-installed-tool"}

    plan = BatchController(config, api_key="k", run_id=RUN_ID).prepare()

    assert plan.dry_run
    assert plan.layout.state_dir == workspace.resolve() / ".repobatch"


def test_real_run_writes_artifacts_and_commits(
    workspace: Path, git: Callable[..., subprocess.CompletedProcess[str]]
) -> None:
    tool = RecordingTool(failing=frozenset({"beta"}))
    controller = BatchController(
        _config(workspace, workflow="command", jobs=2),
        command=(sys.executable, "-c", "pass"),
        tool_runner=tool,
        run_id=RUN_ID,
    )

    outcome = controller.run()

    assert sorted(call.cwd.name for call in tool.calls) == ["alpha", "beta"]
    assert outcome.exit_code == 1
    layout = outcome.layout
    assert (layout.log_dir / "orchestrator.jsonl").is_file()
    assert sorted(path.name for path in layout.target_results_dir.glob("*.json")) == [
        "alpha.json",
        "beta.json",
        "notes.json",
    ]
    assert layout.summary_path.is_file()
    assert FileFailureSet(layout.failure_set_path, layout.lock_path).names() == ["beta"]
    summary = json.loads(layout.summary_path.read_text(encoding="utf-8"))
    assert summary["failed"] is True
    assert summary["workflow"]["ran-fail"] == 1
    assert summary["commit"]["committed"] == 1
    assert not layout.tmp_dir.exists()

    snapshot = CheckpointStore(layout.checkpoint_path, layout.lock_path).snapshot()
    assert {name: record.status for name, record in snapshot.items()} == {
        "alpha": "tool_ok",
        "beta": "tool_fail",
    }
    assert (workspace / "alpha" / "touched.txt").is_file()
    assert git(workspace / "alpha", "status", "--porcelain").stdout == ""
    assert list_run_ids(layout.state_dir) == [RUN_ID]


def test_target_named_summary_keeps_its_own_result(
    tmp_path: Path, make_repo: Callable[..., Path]
) -> None:
    root = tmp_path / "repos"
    root.mkdir()
    make_repo(root, "alpha")
    make_repo(root, "summary")
    controller = BatchController(
        _config(root, workflow="command", jobs=2),
        command=(sys.executable, "-c", "pass"),
        tool_runner=RecordingTool(failing=frozenset({"summary"})),
        run_id=RUN_ID,
    )

    outcome = controller.run()

    assert outcome.exit_code == 1
    assert outcome.summary.queued == 2
    assert outcome.summary.count(WorkflowStatus.RAN_OK) == 1
    assert outcome.summary.count(WorkflowStatus.RAN_FAIL) == 1
    layout = outcome.layout
    assert layout.result_path("summary") != layout.summary_path
    assert json.loads(layout.summary_path.read_text(encoding="utf-8"))["failed"] is True
    assert json.loads(layout.result_path("summary").read_text(encoding="utf-8"))[
        "workflow_status"
    ] == "ran-fail"
    assert FileFailureSet(layout.failure_set_path, layout.lock_path).names() == ["summary"]


def test_dry_run_after_real_run_leaves_state_byte_identical(
    workspace: Path, commit_count: Callable[[Path], int]
) -> None:
    command = (sys.executable, "-c", "pass")
    real = BatchController(
        _config(workspace, workflow="command", jobs=2),
        command=command,
        tool_runner=RecordingTool(),
        run_id=RUN_ID,
    ).run()
    assert real.exit_code == 0
    state = real.layout.state_dir
    checkpoint_bytes = real.layout.checkpoint_path.read_bytes()
    lock_bytes = real.layout.lock_path.read_bytes()
    state_entries = sorted(str(path.relative_to(state)) for path in state.rglob("*"))
    before = _tree(workspace)
    commits = {name: commit_count(workspace / name) for name in ("alpha", "beta")}
    tool = RecordingTool()

    dry = BatchController(
        _config(workspace, workflow="command", dry_run=True, jobs=2),
        command=command,
        tool_runner=tool,
        run_id="20260102T030406Z-beef",
    ).run()

    assert dry.exit_code == 0
    assert tool.calls == []
    assert real.layout.checkpoint_path.read_bytes() == checkpoint_bytes
    assert real.layout.lock_path.read_bytes() == lock_bytes
    assert sorted(str(path.relative_to(state)) for path in state.rglob("*")) == state_entries
    assert _tree(workspace) == before
    assert {name: commit_count(workspace / name) for name in commits} == commits
    assert dry.summary.count(WorkflowStatus.SKIPPED_OK) == 2
    assert dry.summary.count(WorkflowStatus.SKIPPED_NON_TARGET) == 1


def test_state_directory_is_never_a_target(workspace: Path) -> None:
    (workspace / ".repobatch").mkdir()
    tool = RecordingTool()
    controller = BatchController(
        _config(workspace, workflow="command", jobs=1),
        command=(sys.executable, "-c", "pass"),
        tool_runner=tool,
        run_id=RUN_ID,
    )

    outcome = controller.run(only=("alpha", "ghost"))

    assert [call.cwd.name for call in tool.calls] == ["alpha"]
    assert outcome.summary.queued == 1
    assert outcome.exit_code == 0


def test_relative_command_is_pinned_to_invocation_directory(tmp_path: Path) -> None:
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "tool.sh").write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    config = _config(tmp_path, workflow="command", dry_run=True)

    workflow = BatchController(config, command=("scripts/tool.sh", "{target}"), cwd=tmp_path).build_workflow()

    assert workflow.executable == str((scripts / "tool.sh").resolve())


def test_missing_root_is_a_configuration_error(tmp_path: Path) -> None:
    controller = BatchController(_config(tmp_path / "absent"), api_key="k")

    with pytest.raises(RunConfigurationError, match="not a directory"):
        controller.prepare()


def test_missing_api_key_is_a_configuration_error(workspace: Path) -> None:
    with pytest.raises(RunConfigurationError, match="API key"):
        BatchController(_config(workspace)).prepare()


def test_missing_tool_binary_fails_preflight(workspace: Path) -> None:
    controller = BatchController(
        _config(workspace, workflow="command"),
        command=("definitely-not-installed-tool", "{target}"),
    )

    with pytest.raises(RunConfigurationError, match="tool executable not found"):
        controller.prepare()


def test_default_root_prefers_repo_subdirectory(tmp_path: Path) -> None:
    assert default_root(tmp_path) == tmp_path.resolve()
    (tmp_path / "repo").mkdir()
    assert default_root(tmp_path) == (tmp_path / "repo").resolve()


def test_state_dir_override_and_run_listing(tmp_path: Path) -> None:
    state = tmp_path / "elsewhere"
    config = {"paths": {"state_dir": str(state)}}

    assert resolve_state_dir(config, tmp_path) == state.resolve()
    assert resolve_state_dir({}, tmp_path) == tmp_path / ".repobatch"
    assert list_run_ids(state) == []

    for name in ("20260102T030405Z-bbbb", "not-a-run", "20250102T030405Z-aaaa"):
        (state / "results" / name).mkdir(parents=True)
    assert list_run_ids(state) == ["20250102T030405Z-aaaa", "20260102T030405Z-bbbb"]
