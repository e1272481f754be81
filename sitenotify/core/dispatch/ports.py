# sitenotify/core/dispatch/ports.py
from __future__ import annotations

import abc
from typing import Any, Protocol

from sitenotify.core.dispatch.models import Channel, ResolvedRecipient, TemplateKind


class RecipientDirectory(Protocol):
    def resolve(
        self,
        channel: Channel,
        kind: TemplateKind,
        recipient: dict[str, Any],
    ) -> ResolvedRecipient:
        """
        Resolve a recipient reference to a deliverable address for ``channel``.

        Raises:
            RecipientNotFound: the reference does not identify a recipient
        """
        ...


class ChannelClient(abc.ABC):
    """One notification delivery mechanism behind a uniform ``send``."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    def validate_address(self, address: str) -> str | None:
        """Return a normalized address, or None when it is malformed."""

    @abc.abstractmethod
    async def preflight(self) -> None:
        """
        Check channel configuration once before a job starts sending.

        Raises:
            SystemicError: credentials or settings make every send impossible
        """

    @abc.abstractmethod
    async def send(self, recipient: ResolvedRecipient, message: dict[str, Any]) -> None:
        """
        Deliver one message.  Returns on success.

        When cancelled, must not return before the underlying outbound call
        has stopped: the caller's concurrency slot is released on return.

        Raises:
            ChannelError: transport or provider rejected this recipient
        """
