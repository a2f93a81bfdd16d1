"""
repobatch: filesystem utilities

Purpose
- Atomic whole-file replacement for artifacts and result records.
- Durable line appends for append-only logs.
- An exclusive lock that serializes threads of this process and other processes alike.

Non-functional requirements
- Standard library only. The cross-process lock relies on POSIX ``fcntl.flock``.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "append_line",
    "atomic_write",
    "exclusive_lock",
    "read_text_if_exists",
]

_THREAD_LOCKS: dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def append_line(path: PathLike, line: str, *, encoding: str = "utf-8") -> None:
    """Append one newline-terminated line and fsync before returning.

    ``line`` must not contain a newline; callers escape their payload first.
    """

    if "\n" in line or "\r" in line:
        raise ValueError("line must not contain newline characters")
    target = Path(path)
    with target.open("ab") as file_handle:
        file_handle.write((line + "\n").encode(encoding))
        file_handle.flush()
        os.fsync(file_handle.fileno())


def read_text_if_exists(path: PathLike, *, encoding: str = "utf-8") -> str | None:
    """Return file text, or ``None`` when the file does not exist."""

    try:
        return Path(path).read_text(encoding=encoding, errors="replace")
    except FileNotFoundError:
        return None


@contextmanager
def exclusive_lock(lock_path: PathLike, *, create: bool = True) -> Iterator[None]:
    """
    Hold an exclusive lock on ``lock_path`` for the duration of the block.

    A per-path ``threading.Lock`` orders threads within this process and an advisory
    ``flock`` on the lock file orders separate processes. With ``create=False`` a missing
    lock file is not created and only the thread lock is held.
    """

    path = Path(lock_path)
    thread_lock = _thread_lock_for(path)
    with thread_lock:
        fd = _open_lock_file(path, create=create)
        if fd is None:
            yield
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _open_lock_file(path: Path, *, create: bool) -> int | None:
    if create:
        path.parent.mkdir(parents=True, exist_ok=True)
        return os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        return os.open(path, os.O_RDONLY)
    except FileNotFoundError:
        return None


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve(strict=False))
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some filesystems do not support fsync on directories.
    """

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
