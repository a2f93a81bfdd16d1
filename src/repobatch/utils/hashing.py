"""Content fingerprints used to detect whether a tool changed an artifact."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES = 1024 * 1024

# Fingerprint reported for an artifact that does not exist yet.
MISSING_FINGERPRINT = "missing"

__all__ = [
    "MISSING_FINGERPRINT",
    "fingerprint_file",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return sha256_bytes(text.encode(encoding))


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str:
    """Return SHA-256 hex digest for a file read in chunks."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def fingerprint_file(path: PathLike) -> str:
    """Fingerprint ``path``, or return :data:`MISSING_FINGERPRINT` when absent."""

    try:
        return sha256_file(path)
    except (FileNotFoundError, IsADirectoryError):
        return MISSING_FINGERPRINT
