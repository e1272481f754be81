# sitenotify/core/dispatch/worker_pool.py
"""
Bounded pool of concurrent senders.

Each submitted job gets one dispatch task that:

1. runs the channel's systemic pre-flight check once (failure -> ``failed``),
2. moves the job to ``processing`` and fills a work queue,
3. starts up to ``concurrency`` worker coroutines that drain the queue,
4. finalizes the job once every worker has stopped.

All jobs share one semaphore, so ``concurrency`` is a hard ceiling on
simultaneous outbound channel calls across the process.  Workers check the
job's cancel flag before every dequeue and again once a slot is acquired;
an in-flight send always finishes.
Each recipient gets exactly one attempt.
"""
from __future__ import annotations

import asyncio
from typing import Any

from sitenotify.core.dispatch.errors import ChannelError, SystemicError
from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.core.dispatch.models import JobStatus, WorkItem
from sitenotify.core.dispatch.ports import ChannelClient
from sitenotify.infra.logging_config import LogContext, get_logger, mask_address
from sitenotify.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 500


class WorkerPool:
    """
    Runs batch jobs on the current event loop.

    Usage:
        pool = WorkerPool(store, concurrency=5, send_timeout=30.0)
        pool.submit(job_id, items, client, message)
        ...
        await pool.stop()
    """

    def __init__(
        self,
        store: InMemoryJobStore,
        *,
        concurrency: int = 5,
        send_timeout: float = 30.0,
        send_interval: float = 0.0,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._store = store
        self._concurrency = concurrency
        self._send_timeout = send_timeout
        self._send_interval = send_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        job_id: str,
        items: list[WorkItem],
        client: ChannelClient,
        message: dict[str, Any],
    ) -> asyncio.Task:
        """Schedule a job in the background and return its dispatch task."""
        task = asyncio.create_task(
            self._run_job(job_id, items, client, message),
            name=f"dispatch:{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))
        return task

    async def join(self, job_id: str) -> None:
        """Wait until the job's dispatch task has finished (no-op if unknown)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def stop(self) -> None:
        """Cancel every running dispatch task.  Used at shutdown."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Worker pool stopped: {len(tasks)} job(s) interrupted")

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_job(
        self,
        job_id: str,
        items: list[WorkItem],
        client: ChannelClient,
        message: dict[str, Any],
    ) -> None:
        log = LogContext(logger, job_id=job_id, channel=client.name)

        try:
            await client.preflight()
        except Exception as exc:
            if isinstance(exc, SystemicError):
                reason = str(exc)
            else:
                reason = f"{exc.__class__.__name__}: {exc}"
                log.error("Channel pre-flight crashed", exc_info=True)
            self._store.mark_status(
                job_id, JobStatus.FAILED, system_error=reason[:_MAX_ERROR_LENGTH],
            )
            DispatchMetrics.job_finished(client.name, JobStatus.FAILED.value)
            log.error(f"Job aborted before dispatch: {reason}")
            return

        self._store.mark_status(job_id, JobStatus.PROCESSING)

        queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        worker_count = min(self._concurrency, len(items))
        log.info(f"Dispatching {len(items)} item(s) with {worker_count} worker(s)")

        workers = [
            asyncio.create_task(
                self._worker(job_id, queue, client, message),
                name=f"dispatch:{job_id}:w{i}",
            )
            for i in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for worker in workers:
                worker.cancel()
            raise

        self._finalize(job_id, client.name, log)

    async def _worker(
        self,
        job_id: str,
        queue: asyncio.Queue[WorkItem],
        client: ChannelClient,
        message: dict[str, Any],
    ) -> None:
        while True:
            if self._store.get(job_id).state.cancel_requested:
                return
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            await self._send_one(item, client, message)

            if self._send_interval > 0 and not queue.empty():
                await asyncio.sleep(self._send_interval)

    async def _send_one(
        self,
        item: WorkItem,
        client: ChannelClient,
        message: dict[str, Any],
    ) -> None:
        address = item.resolved.address
        async with self._semaphore:
            # Cancel may have landed while this item waited for a slot held by another job
            if self._store.get(item.job_id).state.cancel_requested:
                return
            try:
                with DispatchMetrics.track_send_time(client.name):
                    await asyncio.wait_for(
                        client.send(item.resolved, message),
                        timeout=self._send_timeout,
                    )
            except asyncio.TimeoutError:
                error, reason = f"Send timed out after {self._send_timeout:g}s", "timeout"
            except (ChannelError, SystemicError) as exc:
                error, reason = str(exc) or exc.__class__.__name__, "provider"
            except Exception as exc:
                error, reason = f"{exc.__class__.__name__}: {exc}", "unexpected"
                logger.error(
                    f"Unexpected send error for {mask_address(address)}: {error}",
                    extra={"job_id": item.job_id, "channel": client.name},
                    exc_info=True,
                )
            else:
                self._store.record_success(item.job_id, item.recipient)
                DispatchMetrics.item_sent(client.name)
                logger.debug(
                    f"Sent to {mask_address(address)}",
                    extra={"job_id": item.job_id, "channel": client.name},
                )
                return

        self._store.record_failure(
            item.job_id, item.recipient, error[:_MAX_ERROR_LENGTH], address=address,
        )
        DispatchMetrics.item_failed(client.name, reason)
        logger.warning(
            f"Send failed for {mask_address(address)}: {error[:100]}",
            extra={"job_id": item.job_id, "channel": client.name},
        )

    def _finalize(self, job_id: str, channel: str, log: LogContext) -> None:
        snapshot = self._store.get(job_id)
        if snapshot.state.cancel_requested and snapshot.skipped > 0:
            status = JobStatus.CANCELLED
        else:
            status = JobStatus.COMPLETED

        self._store.mark_status(job_id, status)
        DispatchMetrics.job_finished(channel, status.value)
        log.info(
            f"Job finished: status={status.value}, success={snapshot.success_count}, "
            f"failed={snapshot.failed_count}, skipped={snapshot.skipped}"
        )

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        """Forget the task and log unexpected dispatch death."""
        self._tasks.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Dispatch task died unexpectedly: {exc}",
                extra={"job_id": job_id},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
