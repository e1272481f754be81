# tests/test_worker_pool.py
"""Tests for the worker pool: outcomes, timeouts, pre-flight, cancellation, concurrency ceiling."""
from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import patch

import pytest

from conftest import FakeChannel, wait_for, worker
from sitenotify.core.dispatch.models import Channel, JobStatus, ResolvedRecipient, TemplateKind, WorkItem
from sitenotify.core.dispatch.worker_pool import WorkerPool
from sitenotify.infra.notification_channels import EmailChannel


def _items(store, count: int, channel: Channel = Channel.EMAIL) -> tuple[str, list[WorkItem]]:
    job_id = store.create(count, channel=channel, kind=TemplateKind.WORKER_QR, language="en-US")
    items = []
    for i in range(count):
        recipient = worker(i)
        items.append(WorkItem(
            job_id=job_id,
            recipient=recipient,
            resolved=ResolvedRecipient(
                address=recipient["workerEmail"],
                display_name=recipient["workerName"],
                data=recipient,
            ),
        ))
    return job_id, items


_MESSAGE = {"kind": TemplateKind.WORKER_QR, "language": "en-US", "login_url": None}


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_mixed_outcomes_complete(self, store):
        channel = FakeChannel(outcomes={"worker1@example.com": "fail"})
        pool = WorkerPool(store, concurrency=2)
        job_id, items = _items(store, 3)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.COMPLETED
        assert snap.success_count == 2
        assert snap.failed_count == 1
        assert snap.success_count + snap.failed_count == snap.total
        assert snap.errors[0].recipient == items[1].recipient
        assert snap.errors[0].message == "Mailbox unavailable"
        assert snap.errors[0].address == "worker1@example.com"

    @pytest.mark.asyncio
    async def test_each_recipient_sent_exactly_once(self, store):
        channel = FakeChannel()
        pool = WorkerPool(store, concurrency=4)
        job_id, items = _items(store, 20)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        assert sorted(channel.sent) == sorted(i.resolved.address for i in items)

    @pytest.mark.asyncio
    async def test_unexpected_exception_recorded_with_class_name(self, store):
        channel = FakeChannel(outcomes={"worker0@example.com": "boom"})
        pool = WorkerPool(store, concurrency=1)
        job_id, items = _items(store, 2)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.COMPLETED
        assert snap.errors[0].message == "RuntimeError: kaboom"
        assert snap.success_count == 1

    @pytest.mark.asyncio
    async def test_send_timeout_is_item_failure(self, store):
        channel = FakeChannel(outcomes={"worker0@example.com": "hang"})
        pool = WorkerPool(store, concurrency=2, send_timeout=0.05)
        job_id, items = _items(store, 2)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.COMPLETED
        assert snap.failed_count == 1
        assert snap.errors[0].message == "Send timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, store):
        channel = FakeChannel(delay=0.005)
        pool = WorkerPool(store, concurrency=3)
        job_id, items = _items(store, 30)

        pool.submit(job_id, items, channel, _MESSAGE)
        seen = []
        while not store.get(job_id).status.is_terminal:
            seen.append(store.get(job_id).progress)
            await asyncio.sleep(0.002)
        seen.append(store.get(job_id).progress)

        assert seen == sorted(seen)
        assert seen[-1] == 100


class TestPreflight:
    @pytest.mark.asyncio
    async def test_systemic_error_fails_job_without_sending(self, store):
        channel = FakeChannel(systemic="SMTP authentication failed")
        pool = WorkerPool(store)
        job_id, items = _items(store, 5)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.FAILED
        assert snap.state.system_error == "SMTP authentication failed"
        assert snap.success_count == 0
        assert channel.sent == []
        assert snap.state.started_at is None

    @pytest.mark.asyncio
    async def test_preflight_runs_once_per_job(self, store):
        channel = FakeChannel()
        pool = WorkerPool(store, concurrency=5)
        job_id, items = _items(store, 10)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        assert channel.preflight_calls == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_batch_stops_dequeuing(self, store):
        channel = FakeChannel()
        channel.gate = asyncio.Event()
        pool = WorkerPool(store, concurrency=5)
        job_id, items = _items(store, 50)

        pool.submit(job_id, items, channel, _MESSAGE)
        await wait_for(lambda: channel.in_flight == 5)

        assert store.request_cancel(job_id) is True
        channel.gate.set()
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.CANCELLED
        # In-flight sends finished and were counted; nothing else was sent
        assert snap.success_count == 5
        assert snap.failed_count == 0
        assert snap.skipped == 45
        assert len(channel.sent) == 5

    @pytest.mark.asyncio
    async def test_cancel_before_start_sends_nothing(self, store):
        channel = FakeChannel()
        pool = WorkerPool(store, concurrency=2)
        job_id, items = _items(store, 4)
        store.request_cancel(job_id)

        pool.submit(job_id, items, channel, _MESSAGE)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.CANCELLED
        assert snap.skipped == 4
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_shared_slot_sends_nothing(self, store):
        busy = FakeChannel()
        busy.gate = asyncio.Event()
        idle = FakeChannel()
        pool = WorkerPool(store, concurrency=2)
        first, first_items = _items(store, 2)
        second, second_items = _items(store, 10)

        pool.submit(first, first_items, busy, _MESSAGE)
        await wait_for(lambda: busy.in_flight == 2)
        pool.submit(second, second_items, idle, _MESSAGE)
        await wait_for(lambda: store.get(second).status is JobStatus.PROCESSING)
        await asyncio.sleep(0.01)
        assert idle.in_flight == 0

        store.request_cancel(second)
        busy.gate.set()
        await pool.join(first)
        await pool.join(second)

        snap = store.get(second)
        assert idle.sent == []
        assert snap.status is JobStatus.CANCELLED
        assert snap.success_count == 0
        assert snap.failed_count == 0
        assert snap.skipped == 10
        assert store.get(first).success_count == 2

    @pytest.mark.asyncio
    async def test_cancel_after_last_dequeue_completes(self, store):
        channel = FakeChannel()
        channel.gate = asyncio.Event()
        pool = WorkerPool(store, concurrency=2)
        job_id, items = _items(store, 2)

        pool.submit(job_id, items, channel, _MESSAGE)
        await wait_for(lambda: channel.in_flight == 2)
        store.request_cancel(job_id)
        channel.gate.set()
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.COMPLETED
        assert snap.state.cancel_requested is True
        assert snap.success_count == 2


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_ceiling_shared_across_jobs(self, store):
        channel = FakeChannel(delay=0.01)
        pool = WorkerPool(store, concurrency=3)
        first, first_items = _items(store, 10)
        second, second_items = _items(store, 10)

        pool.submit(first, first_items, channel, _MESSAGE)
        pool.submit(second, second_items, channel, _MESSAGE)
        await pool.join(first)
        await pool.join(second)

        assert channel.max_in_flight == 3
        assert len(channel.sent) == 20

    @pytest.mark.asyncio
    async def test_small_batch_uses_fewer_workers(self, store):
        channel = FakeChannel()
        channel.gate = asyncio.Event()
        pool = WorkerPool(store, concurrency=5)
        job_id, items = _items(store, 2)

        pool.submit(job_id, items, channel, _MESSAGE)
        await wait_for(lambda: channel.in_flight == 2)
        await asyncio.sleep(0.01)
        assert channel.in_flight == 2

        channel.gate.set()
        await pool.join(job_id)

    @pytest.mark.asyncio
    async def test_timed_out_smtp_send_holds_slot_until_thread_exits(self, store):
        lock = threading.Lock()
        active = 0
        peak = 0
        finished = []

        def slow_smtp(self, msg):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.2)
            with lock:
                active -= 1
            finished.append(msg["To"])

        pool = WorkerPool(store, concurrency=1, send_timeout=0.05)
        job_id, items = _items(store, 3)

        with patch("sitenotify.infra.notification_channels.settings") as mock_settings, \
                patch.object(EmailChannel, "_send_smtp", slow_smtp):
            mock_settings.smtp_enabled = True
            mock_settings.email_sender = "noreply@site.example.com"
            pool.submit(job_id, items, EmailChannel(), _MESSAGE)
            await pool.join(job_id)

        snap = store.get(job_id)
        assert peak == 1
        assert len(finished) == 3
        assert snap.status is JobStatus.COMPLETED
        assert snap.failed_count == 3
        assert {e.message for e in snap.errors} == {"Send timed out after 0.05s"}

    def test_concurrency_must_be_positive(self, store):
        with pytest.raises(ValueError):
            WorkerPool(store, concurrency=0)

    @pytest.mark.asyncio
    async def test_stop_interrupts_running_jobs(self, store):
        channel = FakeChannel()
        channel.gate = asyncio.Event()
        pool = WorkerPool(store, concurrency=1)
        job_id, items = _items(store, 3)

        pool.submit(job_id, items, channel, _MESSAGE)
        await wait_for(lambda: channel.in_flight == 1)
        await pool.stop()

        assert pool.active_jobs == 0
        assert store.get(job_id).status is JobStatus.PROCESSING
