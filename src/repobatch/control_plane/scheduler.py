"""Bounded-parallel pass over a set of targets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

from repobatch.observability.logging import correlation_scope
from repobatch.persistence.checkpoint_store import CheckpointStoreError
from repobatch.utils.concurrency import CancellationToken, WorkerPool

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from repobatch.control_plane.runner import WorkflowRunner
    from repobatch.domain.models import Target, TargetResult

logger = logging.getLogger(__name__)


def default_jobs() -> int:
    """Number of CPUs available to this process, at least 1."""

    try:
        available = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        available = os.cpu_count() or 1
    return max(1, available)


@dataclass(frozen=True, slots=True)
class PassReport:
    """Outcome of one scheduler pass."""

    pass_index: int
    results: tuple[TargetResult, ...]
    not_started: tuple[str, ...] = ()
    peak_concurrency: int = 0

    @property
    def interrupted(self) -> bool:
        return bool(self.not_started)

    @property
    def failed_names(self) -> tuple[str, ...]:
        return tuple(sorted(result.name for result in self.results if result.failed))


class Scheduler:
    """Run the workflow runner over targets with at most ``jobs`` in flight.

    Each target runs in a worker thread; the tool it launches runs in its own process and is
    bounded by the runner's timeout. The scheduler never retries.
    """

    def __init__(
        self,
        runner: WorkflowRunner,
        *,
        jobs: int,
        cancel_token: CancellationToken | None = None,
        handle_interrupt: bool = False,
    ) -> None:
        if jobs <= 0:
            raise ValueError("jobs must be > 0")
        self._runner = runner
        self._jobs = jobs
        self._cancel_token = cancel_token
        self._handle_interrupt = handle_interrupt

    @property
    def jobs(self) -> int:
        return self._jobs

    def run_pass(self, targets: Sequence[Target], *, pass_index: int = 1) -> PassReport:
        return asyncio.run(self.run_pass_async(targets, pass_index=pass_index))

    async def run_pass_async(self, targets: Sequence[Target], *, pass_index: int = 1) -> PassReport:
        token = self._cancel_token or CancellationToken()
        pool: WorkerPool[TargetResult] = WorkerPool(max_concurrency=self._jobs, cancel_token=token)
        loop = asyncio.get_running_loop()
        results: list[TargetResult] = []

        with correlation_scope(pass_index=str(pass_index)):
            logger.info("pass started", extra={"targets": len(targets), "jobs": self._jobs})
            with (
                ThreadPoolExecutor(
                    max_workers=self._jobs, thread_name_prefix="repobatch-worker"
                ) as executor,
                self._interrupt_handler(loop, token),
            ):
                coroutines = (
                    self._dispatch(loop, executor, target, pass_index) for target in targets
                )
                async for result in pool.run(coroutines):
                    results.append(result)

        done = {result.target_id for result in results}
        not_started = tuple(sorted(t.name for t in targets if t.target_id not in done))
        if not_started:
            logger.warning("pass interrupted", extra={"not_started": list(not_started)})
        return PassReport(
            pass_index=pass_index,
            results=tuple(sorted(results, key=lambda item: item.target_id)),
            not_started=not_started,
            peak_concurrency=pool.peak_concurrency,
        )

    async def _dispatch(
        self,
        loop: asyncio.AbstractEventLoop,
        executor: ThreadPoolExecutor,
        target: Target,
        pass_index: int,
    ) -> TargetResult:
        # Submitted only once the pool grants a permit, so cancellation can still drop it.
        return await loop.run_in_executor(executor, self._run_guarded, target, pass_index)

    def _run_guarded(self, target: Target, pass_index: int) -> TargetResult:
        try:
            return self._runner.run(target, attempt=pass_index)
        except CheckpointStoreError:
            raise
        except Exception as exc:  # noqa: BLE001 - one target must not take down its siblings.
            logger.exception("unexpected error while processing target", extra={"target": target.name})
            return self._runner.record_crash(target, attempt=pass_index, error=exc)

    @contextlib.contextmanager
    def _interrupt_handler(
        self, loop: asyncio.AbstractEventLoop, token: CancellationToken
    ) -> Iterator[None]:
        if not self._handle_interrupt:
            yield
            return

        def _on_interrupt() -> None:
            if not token.is_cancelled:
                logger.warning("interrupt received; finishing in-flight targets")
            token.cancel()

        installed = False
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(signal.SIGINT, _on_interrupt)
            installed = True
        try:
            yield
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)


__all__ = ["PassReport", "Scheduler", "default_jobs"]
