"""Retry coordination over the run-scoped failure set."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repobatch.control_plane.scheduler import PassReport, Scheduler
    from repobatch.domain.models import Target, TargetResult
    from repobatch.persistence.results import FailureSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many retry passes follow the main pass.

    Any positive ``retries`` buys exactly one retry pass unless ``all_passes`` is set, in
    which case up to ``retries`` passes run and stop early once nothing is left failing.
    """

    retries: int = 0
    all_passes: bool = False

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")

    @property
    def max_retry_passes(self) -> int:
        if self.retries <= 0:
            return 0
        return self.retries if self.all_passes else 1


@dataclass(frozen=True, slots=True)
class RetryReport:
    passes: tuple[PassReport, ...]
    final_results: tuple[TargetResult, ...]
    remaining_failures: tuple[str, ...]

    @property
    def interrupted(self) -> bool:
        return any(report.interrupted for report in self.passes)

    @property
    def retry_passes(self) -> int:
        return max(0, len(self.passes) - 1)


class RetryCoordinator:
    def __init__(self, scheduler: Scheduler, failures: FailureSet, policy: RetryPolicy) -> None:
        self._scheduler = scheduler
        self._failures = failures
        self._policy = policy

    def run(self, targets: Sequence[Target]) -> RetryReport:
        return asyncio.run(self.run_async(targets))

    async def run_async(self, targets: Sequence[Target]) -> RetryReport:
        by_name = {target.name: target for target in targets}
        passes: list[PassReport] = [await self._scheduler.run_pass_async(targets, pass_index=1)]

        for retry_index in range(self._policy.max_retry_passes):
            if passes[-1].interrupted:
                break
            failed = [name for name in self._failures.names() if name in by_name]
            if not failed:
                break
            self._failures.clear()
            pass_index = retry_index + 2
            logger.info("retry pass", extra={"pass": pass_index, "targets": failed})
            passes.append(
                await self._scheduler.run_pass_async(
                    [by_name[name] for name in failed], pass_index=pass_index
                )
            )

        latest: dict[str, TargetResult] = {}
        for report in passes:
            for result in report.results:
                latest[result.target_id] = result

        return RetryReport(
            passes=tuple(passes),
            final_results=tuple(latest[key] for key in sorted(latest)),
            remaining_failures=tuple(self._failures.names()),
        )


__all__ = ["RetryCoordinator", "RetryPolicy", "RetryReport"]
