# sitenotify/infra/notification_channels.py
"""
Concrete channel clients for batch dispatch.

Supports two channels:
- Email    - SMTP (blocking smtplib call run in the default executor)
- WhatsApp - template messaging HTTP API over the shared aiohttp sender session

Both implement ``ChannelClient``: ``send()`` returns on success and raises
``ChannelError`` on failure; ``preflight()`` raises ``SystemicError`` when the
channel is not configured at all.

Usage:
    clients = get_channel_clients()
    await clients[Channel.EMAIL].send(recipient, message)
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import re
import smtplib
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import aiohttp

from sitenotify.config import settings
from sitenotify.core.dispatch.errors import ChannelError, SystemicError
from sitenotify.core.dispatch.models import Channel, ResolvedRecipient, TemplateKind
from sitenotify.core.dispatch.ports import ChannelClient
from sitenotify.core.templates import render_email, whatsapp_template
from sitenotify.infra.http_client import get_sender_session
from sitenotify.infra.logging_config import get_logger, mask_address
from sitenotify.infra.metrics import inc_counter

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_STRIP_RE = re.compile(r"[\s\-().]")
_PHONE_RE = re.compile(r"^\+?\d{8,15}$")
_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)


def decode_image_data_url(data_url: str) -> tuple[str, bytes]:
    """
    Split ``data:image/png;base64,...`` into (mime type, raw bytes).

    Raises:
        ChannelError: not a base64 image data URL
    """
    match = _DATA_URL_RE.match(data_url or "")
    if not match:
        raise ChannelError("QR code is not a base64 image data URL")
    try:
        return match.group(1), base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise ChannelError("QR code data URL is not valid base64")


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class EmailChannel(ChannelClient):
    """
    Email channel via SMTP.

    Port 465 (or ``smtp_use_ssl=true``) uses implicit TLS, anything else
    upgrades with STARTTLS.
    """

    @property
    def name(self) -> str:
        return Channel.EMAIL.value

    def is_configured(self) -> bool:
        return settings.smtp_enabled

    def validate_address(self, address: str) -> str | None:
        if not isinstance(address, str):
            return None
        address = address.strip()
        if not _EMAIL_RE.match(address):
            return None
        return address

    async def preflight(self) -> None:
        if not self.is_configured():
            raise SystemicError("Email channel is not configured (SMTP host/user/password missing)")

    async def send(self, recipient: ResolvedRecipient, message: dict[str, Any]) -> None:
        msg = self._build_message(recipient, message)

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._send_smtp, msg)
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            # smtplib cannot be interrupted; hold the caller until the thread exits
            await asyncio.wait([future])
            if not future.cancelled() and future.exception() is None:
                logger.warning(
                    f"Email to {mask_address(recipient.address)} was delivered after the send was cancelled",
                    extra={"channel": self.name},
                )
            raise
        except smtplib.SMTPRecipientsRefused:
            raise ChannelError("Recipient address rejected by the mail server", status=550)
        except smtplib.SMTPResponseException as exc:
            detail = exc.smtp_error.decode("utf-8", "replace") if isinstance(exc.smtp_error, bytes) else str(exc.smtp_error)
            raise ChannelError(f"SMTP error {exc.smtp_code}: {detail}", status=exc.smtp_code)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelError(f"SMTP delivery failed: {type(exc).__name__}: {exc}")

        inc_counter("email_messages_sent")
        logger.info(f"Email sent to {mask_address(recipient.address)}", extra={"channel": self.name})

    def _build_message(self, recipient: ResolvedRecipient, message: dict[str, Any]) -> MIMEMultipart:
        kind = TemplateKind(message["kind"])
        subject, body = render_email(
            kind,
            message["language"],
            recipient,
            login_url=message.get("login_url"),
        )

        msg = MIMEMultipart()
        msg["From"] = settings.email_sender
        msg["To"] = recipient.address
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        if kind is TemplateKind.WORKER_QR:
            mime_type, image = decode_image_data_url(recipient.data.get("qrCodeDataUrl", ""))
            attachment = MIMEImage(image, _subtype=mime_type.split("/", 1)[1])
            worker_id = recipient.data.get("workerId", "worker")
            attachment.add_header("Content-Disposition", "attachment", filename=f"qrcode_{worker_id}.png")
            msg.attach(attachment)

        return msg

    def _send_smtp(self, msg: MIMEMultipart) -> None:
        """Send email via SMTP (blocking)"""
        timeout = settings.smtp_socket_timeout
        if settings.smtp_implicit_tls:
            server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=timeout)
        else:
            server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout)
        with server:
            if not settings.smtp_implicit_tls:
                server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)


# ---------------------------------------------------------------------------
# WhatsApp
# ---------------------------------------------------------------------------

def normalize_whatsapp_number(raw: str) -> str | None:
    """Return ``+<digits>`` or None when the number is malformed."""
    if not isinstance(raw, str):
        return None
    clean = _PHONE_STRIP_RE.sub("", raw.replace("whatsapp:", "").strip())
    if not _PHONE_RE.match(clean):
        return None
    if not clean.startswith("+"):
        clean = f"+{clean}"
    return clean


class WhatsAppChannel(ChannelClient):
    """
    WhatsApp channel via a template messaging HTTP API.

    worker-qr: the QR image is uploaded first, then a template with an image
    header and the worker's name is sent.  Account kinds send a text-only
    template with name, username, password and login URL parameters.
    """

    @property
    def name(self) -> str:
        return Channel.WHATSAPP.value

    def is_configured(self) -> bool:
        return settings.whatsapp_enabled

    def validate_address(self, address: str) -> str | None:
        return normalize_whatsapp_number(address)

    async def preflight(self) -> None:
        if not self.is_configured():
            raise SystemicError("WhatsApp channel is not configured (API key or sender number missing)")

    async def send(self, recipient: ResolvedRecipient, message: dict[str, Any]) -> None:
        kind = TemplateKind(message["kind"])
        language = message["language"]

        if kind is TemplateKind.WORKER_QR:
            mime_type, image = decode_image_data_url(recipient.data.get("qrCodeDataUrl", ""))
            media_id = await self._upload_media(image, mime_type)
            template_name, code = whatsapp_template(settings.whatsapp_template_name, language)
            components = [
                {"type": "header", "parameters": [{"type": "image", "image": {"id": media_id}}]},
                {"type": "body", "parameters": [{"type": "text", "text": recipient.display_name}]},
            ]
        else:
            template_name, code = whatsapp_template(settings.whatsapp_account_template_name, language)
            texts = [
                recipient.display_name,
                str(recipient.data.get("username", "")),
                str(recipient.data.get("password", "")),
                message.get("login_url") or "",
            ]
            components = [
                {"type": "body", "parameters": [{"type": "text", "text": t} for t in texts]},
            ]

        payload = {
            "type": "template",
            "template": {
                "language": {"code": code},
                "name": template_name,
                "components": components,
            },
            "to": recipient.address,
            "from": settings.whatsapp_sender_number,
        }
        await self._post_json("/whatsapp/messages/sendDirectly", payload)

        inc_counter("whatsapp_messages_sent")
        logger.info(
            f"WhatsApp template '{template_name}' sent to {mask_address(recipient.address)}",
            extra={"channel": self.name},
        )

    async def _upload_media(self, image: bytes, mime_type: str) -> str:
        url = self._url(f"/whatsapp/media/{settings.whatsapp_sender_number}/upload")
        form = aiohttp.FormData()
        form.add_field("file", image, filename="qrcode.png", content_type=mime_type)

        try:
            session = get_sender_session()
            async with session.post(url, data=form, headers=self._auth_headers()) as resp:
                body = await _safe_response_json(resp)
                if resp.status not in (200, 201):
                    raise ChannelError(
                        f"Media upload failed: status={resp.status}, {_error_detail(body)}",
                        status=resp.status,
                    )
                media_id = (body or {}).get("id")
                if not media_id:
                    raise ChannelError("Media upload returned no id", status=resp.status)
                return media_id
        except ChannelError:
            raise
        except aiohttp.ClientError as exc:
            raise ChannelError(f"Media upload network error: {type(exc).__name__}")

    async def _post_json(self, path: str, payload: dict) -> dict:
        try:
            session = get_sender_session()
            async with session.post(
                self._url(path),
                json=payload,
                headers={**self._auth_headers(), "Content-Type": "application/json"},
            ) as resp:
                body = await _safe_response_json(resp)
                if resp.status in (200, 201):
                    return body or {}
                raise ChannelError(
                    f"WhatsApp API error {resp.status}: {_error_detail(body)}",
                    status=resp.status,
                )
        except ChannelError:
            raise
        except aiohttp.ClientError as exc:
            raise ChannelError(f"WhatsApp API network error: {type(exc).__name__}")

    @staticmethod
    def _url(path: str) -> str:
        return settings.whatsapp_api_base_url.rstrip("/") + path

    @staticmethod
    def _auth_headers() -> dict[str, str]:
        return {"X-API-Key": settings.whatsapp_api_key or ""}


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"WhatsApp API returned non-JSON body: status={resp.status}")
        return None


def _error_detail(body: dict | None) -> str:
    if not body:
        return "no response body"
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)[:200]
    return str(body.get("message") or body)[:200]


# Channel registry
_CHANNELS: dict[Channel, type[ChannelClient]] = {
    Channel.EMAIL: EmailChannel,
    Channel.WHATSAPP: WhatsAppChannel,
}


def get_channel_clients() -> dict[Channel, ChannelClient]:
    """Instantiate every registered channel, warning about unconfigured ones."""
    clients: dict[Channel, ChannelClient] = {}
    for channel, channel_class in _CHANNELS.items():
        client = channel_class()
        if not client.is_configured():
            logger.warning(
                f"Notification channel '{channel.value}' not configured, its jobs will fail pre-flight"
            )
        clients[channel] = client
    return clients
