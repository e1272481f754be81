# sitenotify/infra/job_sweeper.py
"""
Background eviction of finished jobs.

Terminal jobs stay readable for ``retention_seconds`` after completion so
operators can poll the final result and build retry batches; after that they
are dropped from the in-memory store.  Idle rate-limiter keys are pruned on
the same schedule.
"""
from __future__ import annotations

import asyncio

from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.infra.logging_config import get_logger
from sitenotify.infra.metrics import DispatchMetrics, inc_counter
from sitenotify.infra.rate_limiter import InMemoryRateLimiter

logger = get_logger(__name__)


class JobSweeper:
    """
    Usage:
        sweeper = JobSweeper(store, retention_seconds=86400, interval=300)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        store: InMemoryJobStore,
        *,
        rate_limiter: InMemoryRateLimiter | None = None,
        retention_seconds: int = 86400,
        interval: float = 300.0,
    ):
        self._store = store
        self._rate_limiter = rate_limiter
        self._retention_seconds = retention_seconds
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_sweeper")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job sweeper started: retention={self._retention_seconds}s, "
            f"interval={self._interval}s",
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job sweeper stopped")

    def sweep_once(self) -> int:
        evicted = self._store.evict_expired(self._retention_seconds)
        if evicted:
            DispatchMetrics.jobs_evicted(evicted)
        if self._rate_limiter is not None:
            self._rate_limiter.cleanup()
        return evicted

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job sweeper loop error: {exc}", exc_info=True)
                inc_counter("job_sweeper_loop_errors")

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected sweeper death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.critical(
                f"Job sweeper died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
