"""
repobatch: append-only checkpoint store

Purpose
- Durable per-target checkpoint log shared by every worker of a run and by concurrent runs.

Functional requirements
- One record is always exactly one line; field payloads are escaped.
- Current status of a target is the status of its last record (last-write-wins replay).
- Every append and every replay holds the shared state lock.
- Malformed lines are skipped during replay, never fatal.

Non-functional requirements
- Appends are fsynced before returning; I/O failures surface as ``CheckpointStoreError``.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

from repobatch.domain.models import CheckpointRecord
from repobatch.utils.fs import append_line, exclusive_lock

if TYPE_CHECKING:
    from collections.abc import Iterator

_FIELD_COUNT: Final[int] = 7
_FIELD_SEPARATOR: Final[str] = "\t"
_EMPTY_EXIT_CODE: Final[str] = "-"

_ESCAPES: Final[dict[str, str]] = {"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"}
_UNESCAPES: Final[dict[str, str]] = {"\\": "\\", "t": "\t", "n": "\n", "r": "\r"}

logger = logging.getLogger(__name__)

__all__ = [
    "CheckpointStore",
    "CheckpointStoreError",
    "decode_record",
    "encode_record",
    "utc_timestamp",
]


class CheckpointStoreError(RuntimeError):
    """Raised when the checkpoint log cannot be read or appended. Fatal to a run."""


def utc_timestamp(now: datetime | None = None) -> str:
    moment = now if now is not None else datetime.now(tz=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(char, char) for char in value)


def _unescape(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        following = next(chars, "")
        out.append(_UNESCAPES.get(following, "\\" + following))
    return "".join(out)


def encode_record(record: CheckpointRecord) -> str:
    """Serialize ``record`` into one tab-separated line (without the newline)."""

    exit_code = _EMPTY_EXIT_CODE if record.exit_code is None else str(record.exit_code)
    fields = (
        record.target,
        record.status,
        record.timestamp,
        str(record.duration_seconds),
        exit_code,
        record.tool,
        record.note,
    )
    return _FIELD_SEPARATOR.join(_escape(field) for field in fields)


def decode_record(line: str) -> CheckpointRecord | None:
    """Parse one log line; return ``None`` for anything malformed."""

    stripped = line.rstrip("\r\n")
    if not stripped:
        return None
    parts = stripped.split(_FIELD_SEPARATOR)
    if len(parts) != _FIELD_COUNT:
        return None
    target, status, timestamp, duration, exit_code, tool, note = (_unescape(p) for p in parts)
    try:
        duration_seconds = int(duration)
        parsed_exit = None if exit_code == _EMPTY_EXIT_CODE else int(exit_code)
        return CheckpointRecord(
            target=target,
            status=status,
            timestamp=timestamp,
            duration_seconds=duration_seconds,
            exit_code=parsed_exit,
            tool=tool,
            note=note,
        )
    except ValueError:
        return None


class CheckpointStore:
    """Append-only checkpoint log guarded by an exclusive lock file."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        lock_path: str | os.PathLike[str],
        *,
        read_only: bool = False,
    ) -> None:
        self._path = Path(path)
        self._lock_path = Path(lock_path)
        self._read_only = read_only

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def read_only(self) -> bool:
        return self._read_only

    def append(
        self,
        target: str | CheckpointRecord,
        status: str | None = None,
        *,
        duration_seconds: int = 0,
        exit_code: int | None = None,
        tool: str = "",
        note: str = "",
        timestamp: str | None = None,
    ) -> CheckpointRecord:
        """Durably append one record and return it.

        Accepts either a ready :class:`CheckpointRecord` or its fields.
        """

        if isinstance(target, CheckpointRecord):
            record = target
        else:
            if status is None:
                raise ValueError("status is required when appending by field")
            record = CheckpointRecord(
                target=target,
                status=status,
                timestamp=timestamp or utc_timestamp(),
                duration_seconds=max(0, int(duration_seconds)),
                exit_code=exit_code,
                tool=tool,
                note=note,
            )

        if self._read_only:
            raise CheckpointStoreError(f"checkpoint store {self._path} is read-only")
        line = encode_record(record)
        try:
            with exclusive_lock(self._lock_path):
                self._path.parent.mkdir(parents=True, exist_ok=True)
                append_line(self._path, line)
        except OSError as exc:
            raise CheckpointStoreError(
                f"failed to append checkpoint for {record.target!r} to {self._path}: {exc}"
            ) from exc
        logger.debug(
            "checkpoint appended",
            extra={"target": record.target, "status": record.status},
        )
        return record

    def last_status(self, target: str) -> str | None:
        record = self.last_record(target)
        return None if record is None else record.status

    def last_record(self, target: str) -> CheckpointRecord | None:
        last: CheckpointRecord | None = None
        for record in self.records():
            if record.target == target:
                last = record
        return last

    def snapshot(self) -> dict[str, CheckpointRecord]:
        """Return the latest record per target, sorted by target."""

        latest: dict[str, CheckpointRecord] = {}
        for record in self.records():
            latest[record.target] = record
        return dict(sorted(latest.items()))

    def records(self) -> Iterator[CheckpointRecord]:
        """Yield every well-formed record in append order."""

        yield from self._read_all()

    def _read_all(self) -> list[CheckpointRecord]:
        try:
            with exclusive_lock(self._lock_path, create=not self._read_only):
                try:
                    raw = self._path.read_text(encoding="utf-8", errors="replace")
                except FileNotFoundError:
                    return []
        except OSError as exc:
            raise CheckpointStoreError(f"failed to read checkpoint log {self._path}: {exc}") from exc

        records: list[CheckpointRecord] = []
        skipped = 0
        for line in raw.split("\n"):
            if not line:
                continue
            record = decode_record(line)
            if record is None:
                skipped += 1
                continue
            records.append(record)
        if skipped:
            logger.warning(
                "skipped malformed checkpoint lines",
                extra={"path": str(self._path), "skipped": skipped},
            )
        return records
