"""Stable constants shared across orchestrator components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RESULT_SCHEMA_VERSION: Final[int] = 1

# State directory layout (relative to the target root unless overridden by config).
STATE_DIR_NAME: Final[str] = ".repobatch"
CHECKPOINT_FILENAME: Final[str] = "state.tsv"
LOCK_FILENAME: Final[str] = "state.lock"
LOGS_DIRNAME: Final[str] = "logs"
RESULTS_DIRNAME: Final[str] = "results"
# Per-target records live one level below the run-level files so no target id can shadow them.
TARGET_RESULTS_DIRNAME: Final[str] = "targets"
TMP_DIRNAME: Final[str] = "tmp"
FAILURE_SET_FILENAME: Final[str] = "failed.txt"
SUMMARY_FILENAME: Final[str] = "summary.json"
RESULT_SUFFIX: Final[str] = ".json"

# Checkpoint statuses. ``tool_ok`` is the "succeeded" sentinel that lets reruns skip a target.
CHECKPOINT_SUCCEEDED: Final[str] = "tool_ok"
CHECKPOINT_FAILED: Final[str] = "tool_fail"

# Placeholder used when sanitizing a directory name leaves nothing behind.
TARGET_ID_PLACEHOLDER: Final[str] = "repo"

# Marker directory required by workflows that only operate on repositories.
VCS_MARKER: Final[str] = ".git"

# Exit code reported for a tool process killed at its timeout (matches coreutils ``timeout``).
TIMEOUT_EXIT_CODE: Final[int] = 124

DEFAULT_TIMEOUT_SECONDS: Final[int] = 300
DEFAULT_MODEL: Final[str] = "mistralai/devstral-2512:free"
DEFAULT_MODEL_PREFIX: Final[str] = "openrouter/"
DEFAULT_API_KEY_ENV: Final[str] = "OPENROUTER_API_KEY"

__all__ = [
    "CHECKPOINT_FAILED",
    "CHECKPOINT_FILENAME",
    "CHECKPOINT_SUCCEEDED",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_API_KEY_ENV",
    "DEFAULT_MODEL",
    "DEFAULT_MODEL_PREFIX",
    "DEFAULT_TIMEOUT_SECONDS",
    "FAILURE_SET_FILENAME",
    "LOCK_FILENAME",
    "LOGS_DIRNAME",
    "RESULTS_DIRNAME",
    "RESULT_SCHEMA_VERSION",
    "RESULT_SUFFIX",
    "STATE_DIR_NAME",
    "SUMMARY_FILENAME",
    "TARGET_ID_PLACEHOLDER",
    "TARGET_RESULTS_DIRNAME",
    "TIMEOUT_EXIT_CODE",
    "TMP_DIRNAME",
    "VCS_MARKER",
]
