"""
repobatch — shared pytest fixtures.

Purpose
- Keep git hermetic: no user/system config, no prompts, a fixed commit identity.
- Build throwaway target roots with real git repositories and scripted fake tools.
"""

from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


FAKE_TOOL_SOURCE = textwrap.dedent(
    """\
    import os
    import pathlib
    import sys

    target = pathlib.Path(sys.argv[1])
    state = pathlib.Path(os.environ["FAKE_TOOL_STATE"])
    state.mkdir(parents=True, exist_ok=True)
    calls = state / f"{target.name}.calls"
    count = int(calls.read_text()) + 1 if calls.exists() else 1
    calls.write_text(str(count))

    fail_first = [n for n in os.environ.get("FAKE_TOOL_FAIL_FIRST", "").split(",") if n]
    always_fail = [n for n in os.environ.get("FAKE_TOOL_ALWAYS_FAIL", "").split(",") if n]
    if target.name in always_fail or (target.name in fail_first and count == 1):
        print(f"refusing to touch {target.name}")
        sys.exit(3)

    (target / "README.md").write_text(f"# {target.name}\\n\\nrefreshed by fake tool\\n")
    print(f"updated {target.name}")
    """
)


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = f"git command failed: git {' '.join(args)}\nstdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        raise AssertionError(msg)
    return completed


@pytest.fixture(autouse=True)
def isolated_git_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_root = tmp_path_factory.mktemp("git-env")
    home = env_root / "home"
    xdg = env_root / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Batch Tester")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "batch-tester@example.invalid")
    for name in list(os.environ):
        if name.startswith("REPOBATCH_"):
            monkeypatch.delenv(name)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)


@pytest.fixture
def git() -> Callable[..., subprocess.CompletedProcess[str]]:
    return run_git


@pytest.fixture
def commit_count() -> Callable[[Path], int]:
    """Commits reachable from ``HEAD``; zero on an unborn branch."""

    def _count(repo: Path) -> int:
        completed = run_git(repo, "rev-list", "--count", "HEAD", check=False)
        return int(completed.stdout.strip()) if completed.returncode == 0 else 0

    return _count


@pytest.fixture
def make_repo() -> Callable[..., Path]:
    """Return a factory creating a git repository with one seed commit."""

    def _make(parent: Path, name: str, *, files: dict[str, str] | None = None) -> Path:
        repo = parent / name
        repo.mkdir(parents=True)
        run_git(repo, "init", "-q")
        seed = files if files is not None else {"main.txt": f"{name}\n"}
        for relative, content in seed.items():
            path = repo / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        run_git(repo, "add", "-A")
        run_git(repo, "commit", "-q", "--no-gpg-sign", "-m", "seed")
        return repo

    return _make


@pytest.fixture
def fake_tool(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[str, ...]:
    """Command template for a scripted tool; its call counts land in ``FAKE_TOOL_STATE``."""

    script = tmp_path / "tools" / "fake_tool.py"
    script.parent.mkdir(parents=True)
    script.write_text(FAKE_TOOL_SOURCE, encoding="utf-8")
    monkeypatch.setenv("FAKE_TOOL_STATE", str(tmp_path / "tool-state"))
    return (sys.executable, str(script), "{target}")


@pytest.fixture
def tool_calls(tmp_path: Path) -> Callable[[str], int]:
    """How many times the scripted tool ran for a target name."""

    def _count(name: str) -> int:
        path = tmp_path / "tool-state" / f"{name}.calls"
        return int(path.read_text()) if path.exists() else 0

    return _count
