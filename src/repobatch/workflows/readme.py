"""README regeneration through aider, with transcript recovery when the edit is lost."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Final

from repobatch.constants import DEFAULT_MODEL_PREFIX, VCS_MARKER
from repobatch.tools.invocation import ToolInvocation
from repobatch.utils.fs import atomic_write
from repobatch.workflows.base import SetupReport, Workflow, ensure_file, ensure_line
from repobatch.workflows.transcript import extract_fenced_file

if TYPE_CHECKING:
    from repobatch.domain.models import Target

logger = logging.getLogger(__name__)

APACHE_LICENSE_NOTICE: Final[str] = """\
                                 Apache License
                           Version 2.0, January 2004
                        http://www.apache.org/licenses/

   Licensed under the Apache License, Version 2.0 (the "License");
   you may not use this file except in compliance with the License.
   You may obtain a copy of the License at

       http://www.apache.org/licenses/LICENSE-2.0

   Unless required by applicable law or agreed to in writing, software
   distributed under the License is distributed on an "AS IS" BASIS,
   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
   See the License for the specific language governing permissions and
   limitations under the License.
"""

_INSTRUCTIONS: Final[tuple[str, ...]] = (
    "Rewrite README.md using a WHOLE-FILE replacement and update .git/description.",
    "",
    "Hard rules:",
    "- Edit README.md and .git/description.",
    "- Keep claims strictly accurate to files in this folder. Do not invent features.",
    "- Produce a useful end-user README with these sections: why this repo, background, "
    "use cases, quick start, detailed installation and usage, development progress, "
    "known gaps, contributing.",
    "- Include a License section: Apache-2.0 and a LICENSE file exists.",
    "- Use the existing README.md as context, but do not keep generic placeholders if code "
    "reveals concrete behavior.",
    "- Do NOT create any new files. Command examples in markdown code blocks are "
    "documentation, not instructions to create files.",
    "- The first line should be a descriptive title, not '# <folder-name>'.",
    "- Do NOT start with an 'Overview' heading.",
    "- Write a concise, descriptive summary for .git/description.",
)


def normalize_model(model: str) -> str:
    """Prefix ``model`` with the OpenRouter route unless it already carries it."""

    stripped = model.strip()
    if stripped.startswith(DEFAULT_MODEL_PREFIX):
        return stripped
    return f"{DEFAULT_MODEL_PREFIX}{stripped}"


class ReadmeWorkflow(Workflow):
    @property
    def tool_id(self) -> str:
        return normalize_model(self.settings.model)

    @property
    def binary(self) -> str:
        return self.settings.binary or self.definition.binary or "aider"

    @property
    def executable(self) -> str | None:
        return self.binary

    def validate(self) -> None:
        if self.definition.needs_api_key and not self.settings.api_key:
            raise ValueError(f"workflow {self.name!r} requires an API key (--api-key)")
        if not self.settings.model.strip():
            raise ValueError(f"workflow {self.name!r} requires a model name")

    def setup(self, target: Target) -> SetupReport:
        report = SetupReport()
        root = target.path

        for entry in self.definition.gitignore_entries:
            try:
                if ensure_line(root / ".gitignore", entry) and ".gitignore" not in report.changed:
                    report.changed.append(".gitignore")
            except OSError as exc:
                report.problems.append(f".gitignore: {exc}")

        if self.definition.license_file is not None:
            try:
                if ensure_file(
                    root / self.definition.license_file, APACHE_LICENSE_NOTICE, replace_empty=True
                ):
                    report.changed.append(self.definition.license_file)
            except OSError as exc:
                report.problems.append(f"{self.definition.license_file}: {exc}")

        for relative in self.definition.edit_files:
            path = root / relative
            if Path(relative).parts[0] == VCS_MARKER and not (root / VCS_MARKER).is_dir():
                continue
            try:
                if ensure_file(path):
                    report.changed.append(relative)
            except OSError as exc:
                report.problems.append(f"{relative}: {exc}")

        if report.problems:
            logger.warning(
                "setup incomplete",
                extra={"target_id": target.target_id, "problems": report.problems},
            )
        return report

    def build_invocation(
        self,
        target: Target,
        *,
        transcript_path: Path | None,
        scratch_dir: Path | None,
    ) -> ToolInvocation:
        argv: list[str] = [
            self.binary,
            "--model",
            self.tool_id,
            "--api-key",
            f"openrouter={self.settings.api_key or ''}",
            *self.definition.tool_args,
        ]
        if scratch_dir is not None:
            scratch_dir.mkdir(parents=True, exist_ok=True)
            message_file = scratch_dir / "message.txt"
            atomic_write(message_file, self.build_message(target))
            argv += ["--message-file", str(message_file)]
        else:
            argv += ["--message", self.build_message(target)]

        for relative in self.definition.context_files:
            if (target.path / relative).is_file():
                argv += ["--read", relative]
        argv += [*self.settings.extra_args, *self.definition.edit_files]

        return ToolInvocation(
            argv=tuple(argv),
            cwd=target.path,
            tool_id=self.tool_id,
            transcript_path=transcript_path,
        )

    def build_message(self, target: Target) -> str:
        lines = list(_INSTRUCTIONS)
        lines += [f"Repository: {target.name}", "", "Original README.md (context):", "```markdown"]
        artifact = self.artifact_path(target)
        if artifact is not None and artifact.is_file():
            lines.append(artifact.read_text(encoding="utf-8", errors="replace").rstrip("\n"))
        lines.append("```")
        return "\n".join(lines) + "\n"

    def recover(self, transcript: str) -> str | None:
        if self.definition.artifact is None:
            return None
        return extract_fenced_file(transcript, Path(self.definition.artifact).name)


__all__ = ["APACHE_LICENSE_NOTICE", "ReadmeWorkflow", "normalize_model"]
