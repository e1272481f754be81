# sitenotify/core/dispatch/dispatcher.py
"""
Batch dispatcher: the single entry point for creating notification jobs.

Responsibilities:
    1. Reject malformed requests (batch size, template kind, login URL)
    2. Pre-screen every recipient; record invalid ones as immediate failures
    3. Create the job and hand the dispatchable items to the worker pool
    4. Return the job id without waiting for delivery
"""
from __future__ import annotations

from typing import Any

from sitenotify.core.dispatch.errors import NotFoundError, ValidationError
from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.core.dispatch.models import Channel, TemplateKind, WorkItem
from sitenotify.core.dispatch.ports import ChannelClient, RecipientDirectory
from sitenotify.core.dispatch.validation import (
    check_batch_size,
    check_template_fields,
    normalize_language,
    parse_kind,
    prescreen,
)
from sitenotify.core.dispatch.worker_pool import WorkerPool
from sitenotify.infra.logging_config import get_logger
from sitenotify.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class Dispatcher:
    def __init__(
        self,
        store: InMemoryJobStore,
        pool: WorkerPool,
        directory: RecipientDirectory,
        channels: dict[Channel, ChannelClient],
        *,
        max_batch_size: int = 50,
        default_language: str = "zh-TW",
    ) -> None:
        self._store = store
        self._pool = pool
        self._directory = directory
        self._channels = channels
        self._max_batch_size = max_batch_size
        self._default_language = default_language

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def client_for(self, channel: str | Channel) -> tuple[Channel, ChannelClient]:
        try:
            resolved = Channel(channel)
            return resolved, self._channels[resolved]
        except (ValueError, KeyError):
            raise NotFoundError(f"Unknown channel '{channel}'")

    async def create_job(
        self,
        channel: str | Channel,
        kind: str | TemplateKind,
        recipients: list[Any] | None,
        *,
        language: str | None = None,
        login_url: str | None = None,
    ) -> str:
        """
        Validate a batch request and start sending in the background.

        Raises:
            NotFoundError: unknown channel
            ValidationError: empty/oversized batch, bad template fields,
                or no recipient passed pre-screening
        """
        channel, client = self.client_for(channel)
        template_kind = parse_kind(kind)

        try:
            check_batch_size(recipients, self._max_batch_size)
            check_template_fields(template_kind, login_url)
        except ValidationError:
            DispatchMetrics.request_rejected("request")
            raise

        language = normalize_language(language, self._default_language)

        screened = prescreen(
            recipients,
            channel=channel,
            kind=template_kind,
            directory=self._directory,
            client=client,
        )
        if not screened.valid:
            DispatchMetrics.request_rejected("no_valid_recipients")
            first_reason = screened.invalid[0][1]
            raise ValidationError(
                f"No valid recipients in batch of {len(recipients)} (first error: {first_reason})"
            )

        job_id = self._store.create(
            len(recipients), channel=channel, kind=template_kind, language=language,
        )
        DispatchMetrics.job_created(channel.value, template_kind.value)

        for recipient, reason, address in screened.invalid:
            self._store.record_failure(job_id, recipient, reason, address=address)
            DispatchMetrics.item_prescreen_failed(channel.value)

        items = [
            WorkItem(job_id=job_id, recipient=recipient, resolved=resolved)
            for recipient, resolved in screened.valid
        ]
        message = {
            "kind": template_kind,
            "language": language,
            "login_url": login_url,
        }
        self._pool.submit(job_id, items, client, message)

        logger.info(
            f"Batch accepted: kind={template_kind.value}, language={language}, "
            f"queued={len(items)}, rejected={len(screened.invalid)}",
            extra={"job_id": job_id, "channel": channel.value},
        )
        return job_id
