"""Run an arbitrary command in every target, e.g. a secret scanner or a formatter."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.tools.invocation import ToolInvocation
from repobatch.workflows.base import Workflow

if TYPE_CHECKING:
    from repobatch.domain.models import Target


def render_argv(template: tuple[str, ...], target: Target) -> tuple[str, ...]:
    """Substitute ``{target}`` (absolute path) and ``{name}`` (basename) in each argument."""

    rendered: list[str] = []
    for item in template:
        rendered.append(item.replace("{target}", str(target.path)).replace("{name}", target.name))
    return tuple(rendered)


class CommandWorkflow(Workflow):
    @property
    def tool_id(self) -> str:
        if not self.settings.command:
            return "command"
        return Path(self.settings.command[0]).name

    @property
    def executable(self) -> str | None:
        return self.settings.command[0] if self.settings.command else None

    def validate(self) -> None:
        if not self.settings.command:
            raise ValueError(
                f"workflow {self.name!r} needs a command after '--', e.g. "
                "repobatch run --workflow command -- ./scan.sh {target}"
            )

    def build_invocation(
        self,
        target: Target,
        *,
        transcript_path: Path | None,
        scratch_dir: Path | None,
    ) -> ToolInvocation:
        argv = render_argv((*self.settings.command, *self.settings.extra_args), target)
        env = {"REPOBATCH_TARGET": str(target.path), "REPOBATCH_TARGET_NAME": target.name}
        if scratch_dir is not None:
            scratch_dir.mkdir(parents=True, exist_ok=True)
            env["REPOBATCH_SCRATCH_DIR"] = str(scratch_dir)
        return ToolInvocation(
            argv=argv,
            cwd=target.path,
            tool_id=self.tool_id,
            transcript_path=transcript_path,
            env=env,
        )


__all__ = ["CommandWorkflow", "render_argv"]
