"""Domain models and identifiers."""

from repobatch.domain.ids import (
    disambiguate_target_ids,
    generate_run_id,
    sanitize_target_id,
    validate_run_id,
)
from repobatch.domain.models import (
    CheckpointRecord,
    CommitStatus,
    RunLayout,
    RunnerState,
    Target,
    TargetResult,
    WorkflowStatus,
)

__all__ = [
    "CheckpointRecord",
    "CommitStatus",
    "RunLayout",
    "RunnerState",
    "Target",
    "TargetResult",
    "WorkflowStatus",
    "disambiguate_target_ids",
    "generate_run_id",
    "sanitize_target_id",
    "validate_run_id",
]
