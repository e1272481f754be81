# sitenotify/core/dispatch/models.py
"""
Batch job domain model.

A job's mutable part (status, counters, errors, timestamps) lives in a frozen
``JobState`` value.  Writers build a new value under the job's lock and swap
the reference; readers take the reference without locking and always see a
consistent state.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class TemplateKind(str, Enum):
    WORKER_QR = "worker-qr"
    DISTRIBUTOR_ACCOUNT = "distributor-account"
    GUARD_ACCOUNT = "guard-account"


SUPPORTED_LANGUAGES = ("zh-TW", "zh-CN", "en-US")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResolvedRecipient:
    """Deliverable address plus the data needed to render the message."""

    address: str
    display_name: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkItem:
    """One recipient of one job, sent at most once."""

    job_id: str
    recipient: dict[str, Any]  # Original payload, returned verbatim in errors
    resolved: ResolvedRecipient


@dataclass(frozen=True)
class JobErrorEntry:
    recipient: Any  # Original payload as submitted
    message: str
    address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "address": self.address,
            "message": self.message,
        }


@dataclass(frozen=True)
class JobState:
    status: JobStatus = JobStatus.PENDING
    success_count: int = 0
    failed_count: int = 0
    errors: tuple[JobErrorEntry, ...] = ()
    cancel_requested: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    system_error: str | None = None

    @property
    def processed(self) -> int:
        return self.success_count + self.failed_count


@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time, read-only view of a job."""

    job_id: str
    channel: Channel
    kind: TemplateKind
    language: str
    total: int
    created_at: datetime
    state: JobState

    @property
    def status(self) -> JobStatus:
        return self.state.status

    @property
    def success_count(self) -> int:
        return self.state.success_count

    @property
    def failed_count(self) -> int:
        return self.state.failed_count

    @property
    def errors(self) -> tuple[JobErrorEntry, ...]:
        return self.state.errors

    @property
    def progress(self) -> int:
        """Whole percent of recipients with a recorded outcome."""
        if self.total <= 0:
            return 0
        return math.floor(100 * self.state.processed / self.total)

    @property
    def skipped(self) -> int:
        return self.total - self.state.processed

    def estimated_time_remaining(self, now: datetime | None = None) -> int | None:
        """
        Seconds until all recipients are processed, from observed throughput.

        ``0`` once the job is terminal, ``None`` until there is throughput
        to extrapolate from.
        """
        state = self.state
        if state.status.is_terminal:
            return 0
        if state.started_at is None or state.processed == 0:
            return None

        now = now or utcnow()
        elapsed = max((now - state.started_at).total_seconds(), 0.0)
        remaining_items = self.total - state.processed
        return max(0, round(elapsed / state.processed * remaining_items))
