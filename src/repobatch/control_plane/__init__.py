"""Control plane: discovery, the per-target runner, scheduling, retry and summaries."""

from repobatch.control_plane.controller import (
    BatchController,
    RunConfigurationError,
    RunOutcome,
    RunPlan,
    default_root,
    list_run_ids,
    resolve_root,
    resolve_state_dir,
)
from repobatch.control_plane.discovery import discover_targets
from repobatch.control_plane.retry import RetryCoordinator, RetryPolicy, RetryReport
from repobatch.control_plane.runner import ProgressSink, RunnerOptions, WorkflowRunner
from repobatch.control_plane.scheduler import PassReport, Scheduler, default_jobs
from repobatch.control_plane.summary import (
    RunSummary,
    summarize_directory,
    summarize_results,
    write_summary,
)

__all__ = [
    "BatchController",
    "PassReport",
    "ProgressSink",
    "RetryCoordinator",
    "RetryPolicy",
    "RetryReport",
    "RunConfigurationError",
    "RunOutcome",
    "RunPlan",
    "RunSummary",
    "RunnerOptions",
    "Scheduler",
    "WorkflowRunner",
    "default_jobs",
    "default_root",
    "discover_targets",
    "list_run_ids",
    "resolve_root",
    "resolve_state_dir",
    "summarize_directory",
    "summarize_results",
    "write_summary",
]
