"""Non-interactive Git helpers used by the commit step of every workflow."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.constants import VCS_MARKER

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_IDENTITY_NAME = "repobatch"
_IDENTITY_EMAIL = "repobatch@example.invalid"


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


class CommitOutcome(Enum):
    COMMITTED = "committed"
    NO_CHANGES = "no_changes"


@dataclass(frozen=True, slots=True)
class CommitResult:
    outcome: CommitOutcome
    commit: str | None
    staged_paths: tuple[str, ...]


def non_interactive_env(
    base: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return an environment in which git and ssh can never prompt for credentials."""

    env = dict(os.environ if base is None else base)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_ASKPASS"] = ""
    env["SSH_ASKPASS"] = ""
    if overrides:
        env.update(overrides)
    return env


def is_repository(path: Path | str) -> bool:
    """Return ``True`` when ``path`` carries its own VCS marker directory."""

    return (Path(path) / VCS_MARKER).is_dir()


class GitEngine:
    """Thin wrapper around the git CLI for one target repository."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self._env_overrides = dict(env_overrides or {})

    def stage_all(self) -> tuple[str, ...]:
        """Stage every change (``git add -A``) and return the staged paths."""
        self._run_git(["add", "-A"])
        return self.staged_paths()

    def staged_paths(self) -> tuple[str, ...]:
        output = self._run_git(["diff", "--cached", "--name-only", "-z"]).stdout
        return tuple(sorted(item for item in output.split("\0") if item))

    def has_staged_changes(self) -> bool:
        return self._run_git(["diff", "--cached", "--quiet"], check=False).returncode != 0

    def commit_all(self, message: str) -> CommitResult:
        """Stage everything and commit when something is staged.

        Nothing staged is reported as ``NO_CHANGES`` rather than an error.
        """
        title = message.strip()
        if not title:
            raise GitEngineError("Commit message cannot be empty.")

        staged = self.stage_all()
        if not staged and not self.has_staged_changes():
            return CommitResult(outcome=CommitOutcome.NO_CHANGES, commit=None, staged_paths=())

        self._run_git(["commit", "--no-gpg-sign", "-m", title])
        commit_sha = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        return CommitResult(outcome=CommitOutcome.COMMITTED, commit=commit_sha, staged_paths=staged)

    def ensure_identity(self) -> bool:
        """Set a repository-local identity when none resolves. Returns ``True`` if set."""
        changed = False
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", _IDENTITY_NAME])
            changed = True
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", _IDENTITY_EMAIL])
            changed = True
        return changed

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        env = non_interactive_env(overrides=self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=self.repo_path,
                env=env,
                text=True,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            raise GitEngineError(f"failed to execute git in {self.repo_path}: {exc}") from exc

        result = CommandResult(
            command=command,
            cwd=self.repo_path.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "CommitOutcome",
    "CommitResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "is_repository",
    "non_interactive_env",
]
