"""
repobatch: external tool invocation

Purpose
- Run one external tool process for one target with its output captured to a transcript.

Functional requirements
- stdout and stderr are merged into the transcript file in arrival order.
- A process still running at its deadline is killed along with its process group and
  reported with exit code 124.
- The child never inherits a terminal it could prompt on.
"""

from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.constants import TIMEOUT_EXIT_CODE
from repobatch.integration_plane.git_engine import non_interactive_env

if TYPE_CHECKING:
    from collections.abc import Mapping

_KILL_GRACE_SECONDS = 5.0


class ToolInvocationError(RuntimeError):
    """Raised when the tool process cannot be started at all."""


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """Everything needed to launch the tool for one target."""

    argv: tuple[str, ...]
    cwd: Path
    tool_id: str
    transcript_path: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("argv must not be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            object.__setattr__(self, "timeout_seconds", None)

    def with_timeout(self, timeout_seconds: float | None) -> ToolInvocation:
        return ToolInvocation(
            argv=self.argv,
            cwd=self.cwd,
            tool_id=self.tool_id,
            transcript_path=self.transcript_path,
            env=self.env,
            timeout_seconds=timeout_seconds,
        )


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    exit_code: int
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_tool(invocation: ToolInvocation) -> ToolOutcome:
    """Run ``invocation`` to completion or to its deadline and report the outcome."""

    env = non_interactive_env(overrides=invocation.env)
    started = time.monotonic()

    with contextlib.ExitStack() as stack:
        if invocation.transcript_path is not None:
            invocation.transcript_path.parent.mkdir(parents=True, exist_ok=True)
            output = stack.enter_context(invocation.transcript_path.open("wb"))
        else:
            output = subprocess.DEVNULL

        try:
            process = subprocess.Popen(
                list(invocation.argv),
                cwd=invocation.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise ToolInvocationError(
                f"failed to start {invocation.argv[0]!r} in {invocation.cwd}: {exc}"
            ) from exc

        try:
            exit_code = process.wait(timeout=invocation.timeout_seconds)
        except subprocess.TimeoutExpired:
            _kill_process_group(process)
            return ToolOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                duration_seconds=time.monotonic() - started,
                timed_out=True,
            )
        except BaseException:
            _kill_process_group(process)
            raise

    return ToolOutcome(exit_code=exit_code, duration_seconds=time.monotonic() - started)


def _kill_process_group(process: subprocess.Popen[bytes]) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    with contextlib.suppress(subprocess.TimeoutExpired):
        process.wait(timeout=_KILL_GRACE_SECONDS)


__all__ = ["ToolInvocation", "ToolInvocationError", "ToolOutcome", "run_tool"]
