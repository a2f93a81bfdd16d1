"""Run identifiers and collision-safe target identifiers."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Final

from repobatch.constants import TARGET_ID_PLACEHOLDER

_RUN_ID_TIMESTAMP_FORMAT: Final[str] = "%Y%m%dT%H%M%SZ"
_RUN_ID_SUFFIX_BYTES: Final[int] = 2
_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^\d{8}T\d{6}Z-[0-9a-f]{4}$")
_UNSAFE_TARGET_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]")
_DISAMBIGUATION_SEPARATOR: Final[str] = "-"

_RandHex = Callable[[int], str]

__all__ = [
    "disambiguate_target_ids",
    "generate_run_id",
    "run_id_timestamp",
    "sanitize_target_id",
    "validate_run_id",
]


def generate_run_id(*, now: datetime | None = None, randhex: _RandHex | None = None) -> str:
    """Generate a sortable run id: ``<UTC timestamp>-<4 hex chars>``.

    The random suffix keeps two runs started within the same second apart on disk.
    """
    moment = now if now is not None else datetime.now(tz=UTC)
    if moment.tzinfo is None or moment.utcoffset() is None:
        moment = moment.replace(tzinfo=UTC)
    stamp = moment.astimezone(UTC).strftime(_RUN_ID_TIMESTAMP_FORMAT)
    suffix = (randhex or secrets.token_hex)(_RUN_ID_SUFFIX_BYTES)
    run_id = f"{stamp}-{suffix}"
    validate_run_id(run_id)
    return run_id


def validate_run_id(run_id: str) -> None:
    if not isinstance(run_id, str):
        raise ValueError(f"run id must be a string, got {type(run_id).__name__}")
    if not _RUN_ID_RE.fullmatch(run_id):
        raise ValueError(f"invalid run id {run_id!r}: expected YYYYmmddTHHMMSSZ-xxxx")


def run_id_timestamp(run_id: str) -> datetime:
    """Return the UTC timestamp encoded in ``run_id``."""
    validate_run_id(run_id)
    stamp = run_id.split("-", 1)[0]
    return datetime.strptime(stamp, _RUN_ID_TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def sanitize_target_id(name: str) -> str:
    """Derive a filesystem-safe short id from a directory name.

    Characters outside ``[A-Za-z0-9._-]`` become ``_``, leading dots are dropped, and an
    empty result falls back to a fixed placeholder.
    """
    safe = _UNSAFE_TARGET_CHARS.sub("_", name)
    safe = safe.lstrip(".")
    return safe or TARGET_ID_PLACEHOLDER


def disambiguate_target_ids(names: Iterable[str]) -> dict[str, str]:
    """Map each name to a sanitized id that is unique within ``names``.

    Names are processed in sorted order; a colliding id gets ``-2``, ``-3``, ... appended.
    """
    assigned: dict[str, str] = {}
    taken: set[str] = set()
    for name in sorted(set(names)):
        base = sanitize_target_id(name)
        candidate = base
        counter = 2
        while candidate in taken:
            candidate = f"{base}{_DISAMBIGUATION_SEPARATOR}{counter}"
            counter += 1
        taken.add(candidate)
        assigned[name] = candidate
    return assigned
