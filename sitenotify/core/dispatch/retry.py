# sitenotify/core/dispatch/retry.py
"""
Operator-triggered resubmission of failed recipients.

Nothing here talks to the job store or the pool: the result is a fresh
batch payload that goes through ``Dispatcher.create_job`` like any other
request and becomes a brand-new job.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from sitenotify.core.dispatch.errors import ConflictError
from sitenotify.core.dispatch.models import JobErrorEntry, JobSnapshot


def build_retry_submission(errors: Iterable[JobErrorEntry | Mapping[str, Any]]) -> dict[str, Any]:
    """
    Turn a job's error list into ``{"recipients": [...]}``.

    Accepts store entries or their wire form (``{"recipient": ..., "message": ...}``).
    Recipients keep their original payload and error order.
    """
    recipients = []
    for entry in errors:
        if isinstance(entry, JobErrorEntry):
            recipients.append(entry.recipient)
        else:
            recipients.append(entry["recipient"])
    return {"recipients": recipients}


def retry_submission_for(snapshot: JobSnapshot) -> dict[str, Any]:
    """
    Retry payload for a finished job.

    Raises:
        ConflictError: the job is still pending or processing
    """
    if not snapshot.status.is_terminal:
        raise ConflictError(f"Job is still {snapshot.status.value}; retry after it finishes")
    return build_retry_submission(snapshot.errors)
