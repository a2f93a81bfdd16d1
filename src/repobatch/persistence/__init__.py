"""Durable run state: checkpoint log, result records, failure set."""

from repobatch.persistence.checkpoint_store import CheckpointStore, CheckpointStoreError
from repobatch.persistence.results import (
    FailureSet,
    FileFailureSet,
    FileResultStore,
    MemoryFailureSet,
    MemoryResultStore,
    ResultStore,
)

__all__ = [
    "CheckpointStore",
    "CheckpointStoreError",
    "FailureSet",
    "FileFailureSet",
    "FileResultStore",
    "MemoryFailureSet",
    "MemoryResultStore",
    "ResultStore",
]
