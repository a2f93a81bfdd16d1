"""Per-target result records and the run-scoped failure set.

Both come in two flavours: file-backed for real runs and in-memory for dry runs, which
must leave no trace on disk.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from repobatch.constants import RESULT_SUFFIX
from repobatch.domain.models import TargetResult
from repobatch.utils.fs import append_line, atomic_write, exclusive_lock

if TYPE_CHECKING:
    from repobatch.domain.models import RunLayout

logger = logging.getLogger(__name__)

__all__ = [
    "FailureSet",
    "FileFailureSet",
    "FileResultStore",
    "MemoryFailureSet",
    "MemoryResultStore",
    "ResultStore",
]


class ResultStore(Protocol):
    def write(self, result: TargetResult) -> None: ...

    def all(self) -> list[TargetResult]: ...


class FailureSet(Protocol):
    def add(self, name: str) -> None: ...

    def names(self) -> list[str]: ...

    def clear(self) -> None: ...


class FileResultStore:
    """One JSON file per target under ``results/<run_id>/targets``; a retry overwrites it."""

    def __init__(self, layout: RunLayout) -> None:
        self._layout = layout

    @property
    def directory(self) -> Path:
        return self._layout.target_results_dir

    def write(self, result: TargetResult) -> None:
        self._layout.target_results_dir.mkdir(parents=True, exist_ok=True)
        atomic_write(self._layout.result_path(result.target_id), result.to_json() + "\n")

    def all(self) -> list[TargetResult]:
        results: list[TargetResult] = []
        for path in sorted(self._layout.target_results_dir.glob(f"*{RESULT_SUFFIX}")):
            try:
                results.append(TargetResult.from_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as exc:
                logger.warning("unreadable result file", extra={"path": str(path), "error": str(exc)})
        return results


class MemoryResultStore:
    def __init__(self) -> None:
        self._results: dict[str, TargetResult] = {}
        self._lock = threading.Lock()

    def write(self, result: TargetResult) -> None:
        with self._lock:
            self._results[result.target_id] = result

    def all(self) -> list[TargetResult]:
        with self._lock:
            return [self._results[key] for key in sorted(self._results)]


class FileFailureSet:
    """Failed target names, one JSON string per line, guarded by the shared state lock.

    Duplicates are tolerated on append and removed on read.
    """

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock_path = lock_path

    @property
    def path(self) -> Path:
        return self._path

    def add(self, name: str) -> None:
        with exclusive_lock(self._lock_path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
            append_line(self._path, json.dumps(name, ensure_ascii=False))

    def names(self) -> list[str]:
        with exclusive_lock(self._lock_path):
            try:
                raw = self._path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return []
        seen: dict[str, None] = {}
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                name = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("skipped malformed failure-set line", extra={"path": str(self._path)})
                continue
            if isinstance(name, str):
                seen.setdefault(name, None)
        return list(seen)

    def clear(self) -> None:
        with exclusive_lock(self._lock_path):
            if self._path.exists():
                atomic_write(self._path, "")


class MemoryFailureSet:
    def __init__(self) -> None:
        self._names: dict[str, None] = {}
        self._lock = threading.Lock()

    def add(self, name: str) -> None:
        with self._lock:
            self._names.setdefault(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._names)

    def clear(self) -> None:
        with self._lock:
            self._names.clear()
