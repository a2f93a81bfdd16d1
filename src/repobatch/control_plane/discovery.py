"""Target discovery: the immediate subdirectories of a root directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from repobatch.domain.ids import disambiguate_target_ids
from repobatch.domain.models import Target

if TYPE_CHECKING:
    from collections.abc import Collection

logger = logging.getLogger(__name__)


def discover_targets(
    root: Path | str,
    *,
    exclude: Collection[Path] = (),
    only: Collection[str] = (),
) -> list[Target]:
    """Return every immediate subdirectory of ``root`` as a target, sorted by name.

    Symbolic links are not followed. Directories in ``exclude`` (typically the state
    directory) are skipped. A non-empty ``only`` restricts the result to those names.
    """

    root_path = Path(root).expanduser().resolve()
    if not root_path.is_dir():
        raise NotADirectoryError(f"target root is not a directory: {root_path}")

    excluded = {Path(item).expanduser().resolve(strict=False) for item in exclude}
    candidates: dict[str, Path] = {}
    for entry in root_path.iterdir():
        if entry.is_symlink() or not entry.is_dir():
            continue
        if entry.resolve() in excluded:
            continue
        candidates[entry.name] = entry

    if only:
        wanted = set(only)
        missing = sorted(wanted - set(candidates))
        if missing:
            logger.warning("requested targets not found", extra={"names": missing})
        candidates = {name: path for name, path in candidates.items() if name in wanted}

    ids = disambiguate_target_ids(candidates)
    targets = [
        Target(path=candidates[name], name=name, target_id=ids[name]) for name in sorted(candidates)
    ]
    logger.info("discovered targets", extra={"root": str(root_path), "count": len(targets)})
    return targets


__all__ = ["discover_targets"]
