# sitenotify/core/dispatch/cancellation.py
from __future__ import annotations

from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.infra.logging_config import get_logger

logger = get_logger(__name__)


class CancellationController:
    """
    Cooperative cancellation of running jobs.

    Only the job's cancel flag changes here.  Workers stop dequeuing once they
    observe it; sends already in flight finish and are recorded normally.  The
    worker pool moves the job to ``cancelled`` when its workers have stopped.
    """

    def __init__(self, store: InMemoryJobStore) -> None:
        self._store = store

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation.

        Returns:
            True on the first request, False when it was already requested

        Raises:
            NotFoundError: unknown job
            ConflictError: job already terminal
        """
        first = self._store.request_cancel(job_id)
        if first:
            logger.info("Cancellation requested", extra={"job_id": job_id})
        else:
            logger.debug("Cancellation already pending", extra={"job_id": job_id})
        return first
