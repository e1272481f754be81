# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sitenotify.core.dispatch.dispatcher import Dispatcher  # noqa: E402
from sitenotify.core.dispatch.errors import ChannelError, SystemicError  # noqa: E402
from sitenotify.core.dispatch.job_store import InMemoryJobStore  # noqa: E402
from sitenotify.core.dispatch.models import Channel, ResolvedRecipient  # noqa: E402
from sitenotify.core.dispatch.ports import ChannelClient  # noqa: E402
from sitenotify.core.dispatch.worker_pool import WorkerPool  # noqa: E402
from sitenotify.infra.recipient_directory import InlineRecipientDirectory  # noqa: E402

QR_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


class FakeChannel(ChannelClient):
    """
    In-memory channel client.

    Per-address behaviour via ``outcomes``: ``"fail"`` raises ChannelError,
    ``"boom"`` raises RuntimeError, ``"hang"`` never finishes on its own.
    When ``gate`` is set, every send waits for it before completing.
    """

    def __init__(
        self,
        name: str = "email",
        *,
        outcomes: dict[str, str] | None = None,
        systemic: str | None = None,
        delay: float = 0.0,
    ):
        self._name = name
        self.outcomes = outcomes or {}
        self.systemic = systemic
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.sent: list[str] = []
        self.messages: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.preflight_calls = 0

    @property
    def name(self) -> str:
        return self._name

    def validate_address(self, address: str) -> str | None:
        if self._name == "email":
            return address if "@" in address else None
        digits = address.lstrip("+")
        return f"+{digits}" if digits.isdigit() else None

    async def preflight(self) -> None:
        self.preflight_calls += 1
        if self.systemic:
            raise SystemicError(self.systemic)

    async def send(self, recipient: ResolvedRecipient, message: dict[str, Any]) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)

            outcome = self.outcomes.get(recipient.address)
            if outcome == "fail":
                raise ChannelError("Mailbox unavailable", status=550)
            if outcome == "boom":
                raise RuntimeError("kaboom")
            if outcome == "hang":
                await asyncio.sleep(3600)

            self.sent.append(recipient.address)
            self.messages.append(message)
        finally:
            self.in_flight -= 1


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def worker(i: int, *, email: str | None = None, whatsapp: str | None = None) -> dict[str, Any]:
    """Worker QR recipient in the admin frontend's wire format."""
    recipient = {
        "workerName": f"Worker {i}",
        "workerId": f"W-{i:04d}",
        "qrCodeDataUrl": QR_DATA_URL,
    }
    recipient["workerEmail"] = email if email is not None else f"worker{i}@example.com"
    if whatsapp is not None:
        recipient["workerWhatsApp"] = whatsapp
    return recipient


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` is true."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_channel():
    return FakeChannel("email")


@pytest.fixture
def whatsapp_channel():
    return FakeChannel("whatsapp")


@pytest.fixture
def make_dispatcher(store, email_channel, whatsapp_channel):
    """Factory: build pool + dispatcher inside the running test loop."""

    def _make(**pool_kwargs) -> tuple[Dispatcher, WorkerPool]:
        pool = WorkerPool(store, **pool_kwargs)
        dispatcher = Dispatcher(
            store,
            pool,
            InlineRecipientDirectory(),
            {Channel.EMAIL: email_channel, Channel.WHATSAPP: whatsapp_channel},
            max_batch_size=50,
            default_language="zh-TW",
        )
        return dispatcher, pool

    return _make
