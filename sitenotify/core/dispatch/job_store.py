# sitenotify/core/dispatch/job_store.py
"""
In-memory job store with per-job serialization.

Every job owns a ``threading.Lock``; mutations of one job never contend with
another job.  The registry lock only guards insertion and eviction of jobs.
Readers do not lock at all: they read the job's current ``JobState``
reference, which writers replace wholesale.

Jobs are not persisted.  Terminal jobs are evicted after a retention window
(``evict_expired``).
"""
from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable

from sitenotify.core.dispatch.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from sitenotify.core.dispatch.models import (
    ALLOWED_TRANSITIONS,
    Channel,
    JobErrorEntry,
    JobSnapshot,
    JobState,
    JobStatus,
    TemplateKind,
    utcnow,
)
from sitenotify.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _JobRecord:
    job_id: str
    channel: Channel
    kind: TemplateKind
    language: str
    total: int
    created_at: datetime
    state: JobState
    lock: Lock

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            channel=self.channel,
            kind=self.kind,
            language=self.language,
            total=self.total,
            created_at=self.created_at,
            state=self.state,
        )


class InMemoryJobStore:
    """Concurrency-safe keyed storage for batch jobs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._jobs: dict[str, _JobRecord] = {}
        self._registry_lock = Lock()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        total: int,
        *,
        channel: Channel,
        kind: TemplateKind,
        language: str,
    ) -> str:
        if total < 1:
            raise ValueError(f"Job total must be positive, got {total}")

        job_id = f"{channel.value}_{uuid.uuid4().hex}"
        record = _JobRecord(
            job_id=job_id,
            channel=channel,
            kind=kind,
            language=language,
            total=total,
            created_at=self._clock(),
            state=JobState(),
            lock=Lock(),
        )
        with self._registry_lock:
            self._jobs[job_id] = record

        logger.info(
            f"Job created: channel={channel.value}, kind={kind.value}, total={total}",
            extra={"job_id": job_id, "channel": channel.value},
        )
        return job_id

    def get(self, job_id: str) -> JobSnapshot:
        return self._record(job_id).snapshot()

    def list_snapshots(self) -> list[JobSnapshot]:
        with self._registry_lock:
            records = list(self._jobs.values())
        return sorted(
            (r.snapshot() for r in records),
            key=lambda s: s.created_at,
            reverse=True,
        )

    def count_by_status(self) -> dict[str, int]:
        counts = Counter(s.status.value for s in self.list_snapshots())
        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    def evict_expired(self, retention_seconds: float) -> int:
        """Remove terminal jobs completed more than ``retention_seconds`` ago."""
        cutoff = self._clock() - timedelta(seconds=retention_seconds)
        with self._registry_lock:
            expired = [
                job_id for job_id, record in self._jobs.items()
                if record.state.completed_at is not None
                and record.state.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            logger.info(f"Evicted {len(expired)} expired job(s)")
        return len(expired)

    # ------------------------------------------------------------------
    # Mutations (serialized per job)
    # ------------------------------------------------------------------

    def record_success(self, job_id: str, recipient: dict[str, Any]) -> JobSnapshot:
        record = self._record(job_id)
        with record.lock:
            state = record.state
            self._check_outcome_allowed(record, state)
            record.state = replace(state, success_count=state.success_count + 1)
            return record.snapshot()

    def record_failure(
        self,
        job_id: str,
        recipient: Any,
        message: str,
        *,
        address: str | None = None,
    ) -> JobSnapshot:
        record = self._record(job_id)
        entry = JobErrorEntry(recipient=recipient, message=message, address=address)
        with record.lock:
            state = record.state
            self._check_outcome_allowed(record, state)
            record.state = replace(
                state,
                failed_count=state.failed_count + 1,
                errors=state.errors + (entry,),
            )
            return record.snapshot()

    def mark_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        system_error: str | None = None,
    ) -> JobSnapshot:
        record = self._record(job_id)
        with record.lock:
            state = record.state
            if status not in ALLOWED_TRANSITIONS[state.status]:
                raise InvalidTransitionError(
                    f"Job {job_id}: {state.status.value} -> {status.value} is not allowed"
                )

            now = self._clock()
            changes: dict[str, Any] = {"status": status}
            if status is JobStatus.PROCESSING:
                changes["started_at"] = now
            if status.is_terminal:
                changes["completed_at"] = now
            if system_error is not None:
                changes["system_error"] = system_error
            record.state = replace(state, **changes)
            snapshot = record.snapshot()

        logger.info(
            f"Job status: {state.status.value} -> {status.value} "
            f"(success={snapshot.success_count}, failed={snapshot.failed_count}, "
            f"total={snapshot.total})",
            extra={"job_id": job_id, "channel": record.channel.value},
        )
        return snapshot

    def request_cancel(self, job_id: str) -> bool:
        """
        Set the job's cooperative cancel flag.

        Returns:
            True if this call set the flag, False if it was already set

        Raises:
            NotFoundError: unknown job
            ConflictError: the job is already terminal
        """
        record = self._record(job_id)
        with record.lock:
            state = record.state
            if state.status.is_terminal:
                raise ConflictError(f"Job already {state.status.value}, cannot cancel")
            if state.cancel_requested:
                return False
            record.state = replace(state, cancel_requested=True, cancelled_at=self._clock())
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, job_id: str) -> _JobRecord:
        record = self._jobs.get(job_id)
        if record is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return record

    @staticmethod
    def _check_outcome_allowed(record: _JobRecord, state: JobState) -> None:
        if state.status.is_terminal:
            raise InvalidTransitionError(
                f"Job {record.job_id} is {state.status.value}; outcomes are frozen"
            )
        if state.processed >= record.total:
            raise InvalidTransitionError(
                f"Job {record.job_id} already has {record.total} outcome(s)"
            )
