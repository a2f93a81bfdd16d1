"""
repobatch — CLI contracts

Purpose
- Enforce CLI behavior for run/status/summary/config: exit codes, output signals and the
  absence of side effects where none are allowed.
- Verify the exit-code mapping applied at the process boundary.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from repobatch.constants import CHECKPOINT_FAILED, CHECKPOINT_SUCCEEDED
from repobatch.main import ExitCode, cli_entrypoint
from repobatch.persistence.checkpoint_store import CheckpointStore, CheckpointStoreError
from repobatch.ui.cli import run_cli

if TYPE_CHECKING:
    from collections.abc import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"


@pytest.fixture
def workspace(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_repo: Callable[..., Path]
) -> Path:
    """Invocation directory holding ``repo/`` with two repositories and one plain folder."""

    cwd = tmp_path / "work"
    root = cwd / "repo"
    root.mkdir(parents=True)
    make_repo(root, "alpha")
    make_repo(root, "beta")
    (root / "plain").mkdir()
    monkeypatch.chdir(cwd)
    return root


def test_dry_run_prints_progress_and_summary(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["run", "--dry-run", "--api-key", "sk-or-test-1234567890"])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "Mode: dry run (nothing is executed or written)" in out
    assert "START  alpha" in out
    assert "DONE   alpha (status=ran-ok, rc=0, commit=dry_run" in out
    assert "DONE   plain (status=skipped-non-target, commit=skipped" in out
    assert "==================== Summary ====================" in out
    assert "sk-or-test" not in out
    assert not (workspace / ".repobatch").exists()


def test_run_json_output_is_machine_readable(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["run", "--dry-run", "--json", "--api-key", "k", "--only", "alpha"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["command"] == "run"
    assert payload["dry_run"] is True
    assert payload["summary"]["queued"] == 1
    assert payload["passes"] == [
        {"failed": [], "not_started": [], "pass_index": 1, "targets": 1}
    ]


def test_missing_api_key_is_a_configuration_error(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["run", "--dry-run"])

    assert exit_code == 2
    assert "API key" in capsys.readouterr().err
    assert not (workspace / ".repobatch").exists()


def test_api_key_is_read_from_named_environment_variable(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-from-env-123456")

    assert run_cli(["run", "--dry-run"]) == 0


@pytest.mark.parametrize("raw", ["abc", "0", "-3"])
def test_invalid_jobs_warns_and_falls_back(
    workspace: Path, capsys: pytest.CaptureFixture[str], raw: str
) -> None:
    exit_code = run_cli(["run", "--dry-run", "--api-key", "k", f"--jobs={raw}"])

    err = capsys.readouterr().err
    assert exit_code == 0
    assert f"Warning: invalid --jobs {raw!r}, using default" in err


def test_status_reads_without_creating_state(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = run_cli(["status", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["targets"] == {}
    assert not (workspace / ".repobatch").exists()


def test_status_lists_last_record_per_target(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    state = workspace / ".repobatch"
    store = CheckpointStore(state / "state.tsv", state / "state.lock")
    store.append("alpha", CHECKPOINT_FAILED, exit_code=3, tool="aider")
    store.append("alpha", CHECKPOINT_SUCCEEDED, exit_code=0, duration_seconds=41, tool="aider")
    store.append("beta", CHECKPOINT_FAILED, exit_code=124, tool="aider")

    assert run_cli(["status", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert {name: entry["status"] for name, entry in payload["targets"].items()} == {
        "alpha": "tool_ok",
        "beta": "tool_fail",
    }
    assert payload["targets"]["alpha"]["duration_seconds"] == 41

    assert run_cli(["status"]) == 0
    out = capsys.readouterr().out
    assert "TARGET" in out
    assert "41s" in out
    assert "124" in out
    assert "NOTE" not in out

    assert run_cli(["status", "--verbose"]) == 0
    assert "NOTE" in capsys.readouterr().out


def test_summary_without_runs_and_for_unknown_run(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["summary"]) == 0
    assert "No runs found" in capsys.readouterr().out

    assert run_cli(["summary", "20260102T030405Z-abcd"]) == 2
    assert "run not found" in capsys.readouterr().err


def test_config_command_shows_redacted_effective_config(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (workspace.parent / "repobatch.toml").write_text(
        '[run]\nretry = 1\n\n[tool]\nmodel = "vendor/model"\n', encoding="utf-8"
    )

    assert run_cli(["config", "--json", "--root", "elsewhere"]) == 0

    config = json.loads(capsys.readouterr().out)["config"]
    assert config["run"]["retry"] == 1
    assert config["tool"]["model"] == "vendor/model"
    assert config["tool"]["api_key_env"] == "OPENROUTER_API_KEY"
    assert config["paths"]["root"] == (workspace.parent / "elsewhere").resolve().as_posix()


def test_invalid_config_file_is_a_configuration_error(
    workspace: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (workspace.parent / "repobatch.toml").write_text('[tool]\napi_key = "sk-or-x"\n', encoding="utf-8")

    assert run_cli(["config"]) == 2
    assert "embedded secret values are forbidden" in capsys.readouterr().err
    assert run_cli(["config", "--config", "missing.toml"]) == 2


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (CheckpointStoreError("disk full"), ExitCode.STATE_ERROR),
        (KeyboardInterrupt(), ExitCode.TARGET_FAILURES),
        (FileNotFoundError("gone"), ExitCode.CONFIG_ERROR),
        (RuntimeError("bug"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_entrypoint_maps_exceptions_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, error: BaseException, expected: ExitCode
) -> None:
    def _raise(argv: object = None) -> int:
        raise error

    monkeypatch.setattr("repobatch.ui.cli.run_cli", _raise)

    assert cli_entrypoint(["status"]) == int(expected)


def test_entrypoint_maps_wrapped_state_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(argv: object = None) -> int:
        try:
            raise CheckpointStoreError("lock lost")
        except CheckpointStoreError as exc:
            raise RuntimeError("pass aborted") from exc

    monkeypatch.setattr("repobatch.ui.cli.run_cli", _raise)

    assert cli_entrypoint([]) == int(ExitCode.STATE_ERROR)


@pytest.mark.parametrize(
    "argv",
    [["run", "--retry", "-1"], ["run", "--timeout", "soon"], ["explode"], []],
)
def test_usage_errors_exit_2(workspace: Path, argv: list[str]) -> None:
    assert cli_entrypoint(argv) == 2


def test_module_entrypoint_runs_as_subprocess(workspace: Path) -> None:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing else f"{SRC_PATH}{os.pathsep}{existing}"

    completed = subprocess.run(
        [sys.executable, "-m", "repobatch", "run", "--dry-run", "--json", "--api-key", "k"],
        cwd=workspace.parent,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["summary"]["queued"] == 3
    assert payload["summary"]["workflow"]["skipped-non-target"] == 1
