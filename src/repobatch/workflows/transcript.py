"""Recover a file body the tool printed to its transcript but failed to write to disk."""

from __future__ import annotations

import re
from typing import Final

_SPEAKER_PREFIX: Final[re.Pattern[str]] = re.compile(r"^\s*(?:ASSISTANT|USER)\s+")
_FENCE_OPEN: Final[str] = "```"
_FENCE_CLOSE: Final[re.Pattern[str]] = re.compile(r"^```\s*$")
_NOISE_LINES: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"^(?:python3|npm|node|yarn|pip|go|cargo|make)\s+\w+"),
    re.compile(r"^Applied edit to"),
    re.compile(r"^File.*created"),
    re.compile(r"^Traceback"),
    re.compile(r"^SyntaxError"),
    re.compile(r"^```"),
)

DEFAULT_MIN_LINES: Final[int] = 5


def _header_pattern(filename: str) -> re.Pattern[str]:
    # Accepts "NAME", "NAME:" and "NAME (anything)".
    return re.compile(rf"^{re.escape(filename)}(?:\s*[:(].*)?\s*$")


def extract_fenced_file(
    transcript: str,
    filename: str,
    *,
    min_lines: int = DEFAULT_MIN_LINES,
) -> str | None:
    """Return the last fenced block that directly follows a ``filename`` header line.

    Blocks shorter than ``min_lines`` are ignored. Lines that look like shell commands,
    edit notices or tracebacks are dropped from the captured body.
    """

    header = _header_pattern(filename)
    want = False
    capturing = False
    buffer: list[str] = []
    last: list[str] | None = None

    for raw_line in transcript.split("\n"):
        line = _SPEAKER_PREFIX.sub("", raw_line.rstrip("\r"), count=1)

        if not capturing:
            if header.match(line):
                want = True
                continue
            if want and line.startswith(_FENCE_OPEN):
                capturing = True
                buffer = []
                continue
            want = False
            continue

        if _FENCE_CLOSE.match(line):
            if len(buffer) >= min_lines:
                last = buffer
            capturing = False
            want = False
            continue

        if any(pattern.match(line) for pattern in _NOISE_LINES):
            continue
        buffer.append(line)

    if last is None:
        return None
    return "".join(f"{line}\n" for line in last)


__all__ = ["DEFAULT_MIN_LINES", "extract_fenced_file"]
