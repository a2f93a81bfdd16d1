"""
repobatch: workflow contract

Purpose
- Define what the per-target runner needs from a workflow: setup, a tool invocation, an
  artifact to fingerprint, transcript recovery, and a commit message.

Functional requirements
- ``setup`` is idempotent. It never clobbers non-empty user files and never duplicates
  entries it adds.
- ``recover`` returns ``None`` when it has nothing to offer; that is not an error.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.utils.fs import atomic_write

if TYPE_CHECKING:
    from repobatch.domain.models import Target
    from repobatch.tools.invocation import ToolInvocation
    from repobatch.workflows.catalog import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkflowSettings:
    """Run-wide knobs a workflow needs to build its tool invocation."""

    model: str = ""
    api_key: str | None = None
    binary: str | None = None
    extra_args: tuple[str, ...] = ()
    command: tuple[str, ...] = ()


@dataclass(slots=True)
class SetupReport:
    """Files touched during setup plus non-fatal problems."""

    changed: list[str] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


class Workflow(ABC):
    """One idempotent per-target workflow."""

    def __init__(self, definition: WorkflowDefinition, settings: WorkflowSettings) -> None:
        self.definition = definition
        self.settings = settings

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def requires_repository(self) -> bool:
        return self.definition.requires_repository

    @property
    def commit_message(self) -> str:
        return self.definition.commit_message

    @property
    @abstractmethod
    def tool_id(self) -> str:
        """Identifier recorded in checkpoint records (model name, command name)."""

    @property
    def executable(self) -> str | None:
        """Program the invocation starts; checked before any target is processed."""

        return None

    def artifact_path(self, target: Target) -> Path | None:
        if self.definition.artifact is None:
            return None
        return target.path / self.definition.artifact

    def validate(self) -> None:
        """Raise ``ValueError`` when settings cannot possibly produce a working run."""

    def setup(self, target: Target) -> SetupReport:
        return SetupReport()

    @abstractmethod
    def build_invocation(
        self,
        target: Target,
        *,
        transcript_path: Path | None,
        scratch_dir: Path | None,
    ) -> ToolInvocation:
        """Return the tool invocation for ``target``. ``scratch_dir`` is per-target."""

    def recover(self, transcript: str) -> str | None:
        return None


def ensure_file(path: Path, content: str = "", *, replace_empty: bool = False) -> bool:
    """Create ``path`` with ``content`` when missing (or empty when ``replace_empty``).

    Returns ``True`` when the file was written.
    """

    if path.exists():
        if not replace_empty or not path.is_file() or path.stat().st_size > 0:
            return False
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(path, content)
    return True


def ensure_line(path: Path, entry: str) -> bool:
    """Append ``entry`` as its own line unless a line equal to it (modulo spaces) exists.

    Adds a separating newline when the file does not end with one. Returns ``True`` when
    the file changed.
    """

    pattern = re.compile(rf"^\s*{re.escape(entry)}\s*$", re.MULTILINE)
    existing = path.read_text(encoding="utf-8", errors="replace") if path.exists() else ""
    if pattern.search(existing):
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{prefix}{entry}\n")
    return True


__all__ = [
    "SetupReport",
    "Workflow",
    "WorkflowSettings",
    "ensure_file",
    "ensure_line",
]
