"""Utility exports for filesystem, hashing, and concurrency helpers."""

from repobatch.utils.concurrency import BoundedSemaphore, CancellationToken, WorkerPool
from repobatch.utils.fs import append_line, atomic_write, exclusive_lock, read_text_if_exists
from repobatch.utils.hashing import (
    MISSING_FINGERPRINT,
    fingerprint_file,
    sha256_bytes,
    sha256_file,
    sha256_text,
)

__all__ = [
    "MISSING_FINGERPRINT",
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "append_line",
    "atomic_write",
    "exclusive_lock",
    "fingerprint_file",
    "read_text_if_exists",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]
