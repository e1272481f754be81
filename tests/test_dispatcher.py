# tests/test_dispatcher.py
"""Tests for batch job creation: request validation, pre-screening, handoff to the pool."""
from __future__ import annotations

import pytest

from conftest import worker
from sitenotify.core.dispatch.errors import NotFoundError, ValidationError
from sitenotify.core.dispatch.models import JobStatus


def _account(i: int, **overrides) -> dict:
    recipient = {
        "name": f"Subcontractor {i}",
        "username": f"sub{i}",
        "password": "Passw0rd!",
        "email": f"sub{i}@example.com",
        "whatsapp": f"+8529000000{i}",
    }
    recipient.update(overrides)
    return recipient


class TestRequestValidation:
    @pytest.mark.asyncio
    async def test_empty_batch_rejected_without_job(self, make_dispatcher, store):
        dispatcher, _ = make_dispatcher()
        with pytest.raises(ValidationError, match="empty"):
            await dispatcher.create_job("email", "worker-qr", [])
        assert store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_oversized_batch_rejected_without_job(self, make_dispatcher, store):
        dispatcher, _ = make_dispatcher()
        recipients = [worker(i) for i in range(51)]
        with pytest.raises(ValidationError, match="exceeds the limit of 50"):
            await dispatcher.create_job("email", "worker-qr", recipients)
        assert store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_batch_at_limit_accepted(self, make_dispatcher, store):
        dispatcher, pool = make_dispatcher()
        job_id = await dispatcher.create_job("email", "worker-qr", [worker(i) for i in range(50)])
        await pool.join(job_id)
        assert store.get(job_id).success_count == 50

    @pytest.mark.asyncio
    async def test_unknown_channel(self, make_dispatcher):
        dispatcher, _ = make_dispatcher()
        with pytest.raises(NotFoundError):
            await dispatcher.create_job("telegram", "worker-qr", [worker(1)])

    @pytest.mark.asyncio
    async def test_unknown_kind(self, make_dispatcher):
        dispatcher, _ = make_dispatcher()
        with pytest.raises(ValidationError, match="Unknown template kind"):
            await dispatcher.create_job("email", "birthday", [worker(1)])

    @pytest.mark.asyncio
    async def test_account_kinds_need_login_url(self, make_dispatcher, store):
        dispatcher, _ = make_dispatcher()
        with pytest.raises(ValidationError, match="login_url"):
            await dispatcher.create_job("email", "distributor-account", [_account(1)])
        assert store.list_snapshots() == []

    @pytest.mark.asyncio
    async def test_all_recipients_invalid_rejected_without_job(self, make_dispatcher, store):
        dispatcher, _ = make_dispatcher()
        recipients = [worker(1, email="nope"), {"workerName": "No id"}]
        with pytest.raises(ValidationError, match="No valid recipients"):
            await dispatcher.create_job("email", "worker-qr", recipients)
        assert store.list_snapshots() == []


class TestPrescreenFailures:
    @pytest.mark.asyncio
    async def test_invalid_recipients_recorded_as_failures(self, make_dispatcher, store, email_channel):
        dispatcher, pool = make_dispatcher()
        bad_address = worker(2, email="not-an-email")
        missing_id = worker(3)
        del missing_id["workerId"]
        recipients = [worker(1), bad_address, missing_id, "just a string"]

        job_id = await dispatcher.create_job("email", "worker-qr", recipients)
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.status is JobStatus.COMPLETED
        assert snap.total == 4
        assert snap.success_count == 1
        assert snap.failed_count == 3
        messages = {str(e.recipient): e.message for e in snap.errors}
        assert messages[str(bad_address)] == "Malformed email address"
        assert messages[str(missing_id)] == "Missing required field(s): workerId"
        assert messages["just a string"] == "Recipient must be an object"
        # Invalid recipients never reach the channel
        assert email_channel.sent == ["worker1@example.com"]

    @pytest.mark.asyncio
    async def test_bad_qr_data_url_is_prescreen_failure(self, make_dispatcher, store):
        dispatcher, pool = make_dispatcher()
        bad_qr = worker(2)
        bad_qr["qrCodeDataUrl"] = "https://example.com/qr.png"

        job_id = await dispatcher.create_job("email", "worker-qr", [worker(1), bad_qr])
        await pool.join(job_id)

        errors = store.get(job_id).errors
        assert len(errors) == 1
        assert errors[0].message == "QR code must be an image data URL"

    @pytest.mark.asyncio
    async def test_missing_channel_address_is_prescreen_failure(self, make_dispatcher, store, whatsapp_channel):
        dispatcher, pool = make_dispatcher()
        no_phone = worker(2)

        job_id = await dispatcher.create_job(
            "whatsapp", "worker-qr", [worker(1, whatsapp="85291234567"), no_phone],
        )
        await pool.join(job_id)

        snap = store.get(job_id)
        assert snap.success_count == 1
        assert "no whatsapp address" in snap.errors[0].message
        assert whatsapp_channel.sent == ["+85291234567"]


class TestHandoff:
    @pytest.mark.asyncio
    async def test_returns_before_sending_finishes(self, make_dispatcher, store, email_channel):
        dispatcher, pool = make_dispatcher()
        email_channel.delay = 0.05

        job_id = await dispatcher.create_job("email", "worker-qr", [worker(1), worker(2)])
        assert store.get(job_id).status is JobStatus.PENDING

        await pool.join(job_id)
        assert store.get(job_id).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsupported_language_falls_back_to_default(self, make_dispatcher, store, email_channel):
        dispatcher, pool = make_dispatcher()
        job_id = await dispatcher.create_job("email", "worker-qr", [worker(1)], language="fr-FR")
        await pool.join(job_id)

        assert store.get(job_id).language == "zh-TW"
        assert email_channel.messages[0]["language"] == "zh-TW"

    @pytest.mark.asyncio
    async def test_message_carries_kind_language_and_login_url(self, make_dispatcher, email_channel):
        dispatcher, pool = make_dispatcher()
        job_id = await dispatcher.create_job(
            "email", "guard-account",
            [{"guardName": "Lee", "username": "g1", "password": "pw", "guardEmail": "lee@example.com"}],
            language="en-US",
            login_url="https://site.example.com/login",
        )
        await pool.join(job_id)

        message = email_channel.messages[0]
        assert message["kind"].value == "guard-account"
        assert message["language"] == "en-US"
        assert message["login_url"] == "https://site.example.com/login"
