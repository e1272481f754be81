# tests/test_job_sweeper.py
from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import FakeClock
from sitenotify.core.dispatch.errors import NotFoundError
from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.core.dispatch.models import Channel, JobStatus, TemplateKind
from sitenotify.infra.job_sweeper import JobSweeper
from sitenotify.infra.rate_limiter import InMemoryRateLimiter


def _finished_job(store: InMemoryJobStore) -> str:
    job_id = store.create(1, channel=Channel.EMAIL, kind=TemplateKind.WORKER_QR, language="zh-TW")
    store.mark_status(job_id, JobStatus.PROCESSING)
    store.record_success(job_id, {})
    store.mark_status(job_id, JobStatus.COMPLETED)
    return job_id


class TestJobSweeper:
    def test_sweep_once_evicts_after_retention(self):
        clock = FakeClock()
        store = InMemoryJobStore(clock=clock)
        job_id = _finished_job(store)
        sweeper = JobSweeper(store, retention_seconds=86400)

        clock.advance(3600)
        assert sweeper.sweep_once() == 0
        assert store.get(job_id).status is JobStatus.COMPLETED

        clock.advance(86400)
        assert sweeper.sweep_once() == 1
        with pytest.raises(NotFoundError):
            store.get(job_id)

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self):
        store = InMemoryJobStore()
        job_id = _finished_job(store)
        sweeper = JobSweeper(store, retention_seconds=0, interval=0.01)

        await sweeper.start()
        assert sweeper.running is True
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert sweeper.running is False
        with pytest.raises(NotFoundError):
            store.get(job_id)

    def test_sweep_once_prunes_idle_rate_limit_keys(self):
        store = InMemoryJobStore()
        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=0)
        limiter.is_allowed("10.0.0.1")
        limiter.is_allowed("10.0.0.2")
        sweeper = JobSweeper(store, rate_limiter=limiter)

        sweeper.sweep_once()

        assert limiter._requests == {}

    def test_eviction_logged_once(self, caplog):
        clock = FakeClock()
        store = InMemoryJobStore(clock=clock)
        _finished_job(store)
        clock.advance(86401)
        sweeper = JobSweeper(store, retention_seconds=86400)

        with caplog.at_level(logging.INFO):
            assert sweeper.sweep_once() == 1

        assert len([r for r in caplog.records if "Evicted" in r.getMessage()]) == 1
