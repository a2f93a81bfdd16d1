"""Git integration for the commit step."""

from repobatch.integration_plane.git_engine import (
    CommitOutcome,
    CommitResult,
    GitCommandError,
    GitEngine,
    GitEngineError,
    is_repository,
    non_interactive_env,
)

__all__ = [
    "CommitOutcome",
    "CommitResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "is_repository",
    "non_interactive_env",
]
