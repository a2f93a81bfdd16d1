"""Per-target workflows and their catalog."""

from __future__ import annotations

from repobatch.workflows.base import SetupReport, Workflow, WorkflowSettings
from repobatch.workflows.catalog import WorkflowCatalog, WorkflowCatalogError, WorkflowDefinition
from repobatch.workflows.command import CommandWorkflow
from repobatch.workflows.readme import ReadmeWorkflow

_KINDS: dict[str, type[Workflow]] = {
    "readme": ReadmeWorkflow,
    "command": CommandWorkflow,
}


def build_workflow(definition: WorkflowDefinition, settings: WorkflowSettings) -> Workflow:
    """Instantiate the workflow class registered for ``definition.kind``."""

    try:
        workflow_cls = _KINDS[definition.kind]
    except KeyError:
        raise WorkflowCatalogError(f"no implementation for workflow kind {definition.kind!r}") from None
    return workflow_cls(definition, settings)


__all__ = [
    "CommandWorkflow",
    "ReadmeWorkflow",
    "SetupReport",
    "Workflow",
    "WorkflowCatalog",
    "WorkflowCatalogError",
    "WorkflowDefinition",
    "WorkflowSettings",
    "build_workflow",
]
