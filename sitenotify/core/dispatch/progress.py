# sitenotify/core/dispatch/progress.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.core.dispatch.models import JobErrorEntry, JobSnapshot, JobStatus, utcnow


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    channel: str
    kind: str
    status: JobStatus
    total: int
    success: int
    failed: int
    progress: int
    errors: tuple[JobErrorEntry, ...]
    estimated_time_remaining: int | None
    is_cancelled: bool
    system_error: str | None
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot, now: datetime) -> "JobProgress":
        state = snapshot.state
        return cls(
            job_id=snapshot.job_id,
            channel=snapshot.channel.value,
            kind=snapshot.kind.value,
            status=state.status,
            total=snapshot.total,
            success=state.success_count,
            failed=state.failed_count,
            progress=snapshot.progress,
            errors=state.errors,
            estimated_time_remaining=snapshot.estimated_time_remaining(now),
            is_cancelled=state.cancel_requested,
            system_error=state.system_error,
            created_at=snapshot.created_at,
            completed_at=state.completed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire format consumed by the polling client."""
        return {
            "jobId": self.job_id,
            "channel": self.channel,
            "kind": self.kind,
            "status": self.status.value,
            "progress": self.progress,
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "isCancelled": self.is_cancelled,
            "systemError": self.system_error,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class ProgressReader:
    """Read-only, lock-free job snapshots for polling clients."""

    def __init__(self, store: InMemoryJobStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def get_snapshot(self, job_id: str) -> JobProgress:
        """
        Raises:
            NotFoundError: unknown or evicted job
        """
        return JobProgress.from_snapshot(self._store.get(job_id), self._clock())

    def list_jobs(self) -> list[JobProgress]:
        now = self._clock()
        return [JobProgress.from_snapshot(s, now) for s in self._store.list_snapshots()]
