# sitenotify/core/dispatch/validation.py
"""
Pre-flight validation for batch requests.

Request-level checks raise ``ValidationError`` and stop the request before a
job exists.  Per-recipient checks never raise: they sort recipients into
dispatchable work and immediate failures.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sitenotify.core.dispatch.errors import RecipientNotFound, ValidationError
from sitenotify.core.dispatch.models import (
    SUPPORTED_LANGUAGES,
    Channel,
    ResolvedRecipient,
    TemplateKind,
)
from sitenotify.core.dispatch.ports import ChannelClient, RecipientDirectory
from sitenotify.core.templates import TEMPLATE_SPECS


@dataclass
class PrescreenResult:
    valid: list[tuple[dict[str, Any], ResolvedRecipient]] = field(default_factory=list)
    invalid: list[tuple[Any, str, str | None]] = field(default_factory=list)  # (recipient, message, address)


def normalize_language(language: str | None, default: str) -> str:
    """Return ``language`` if supported, else ``default``."""
    if language in SUPPORTED_LANGUAGES:
        return language
    return default


def parse_kind(kind: str | TemplateKind) -> TemplateKind:
    try:
        return TemplateKind(kind)
    except ValueError:
        allowed = ", ".join(k.value for k in TemplateKind)
        raise ValidationError(f"Unknown template kind '{kind}' (expected one of: {allowed})")


def check_batch_size(recipients: list[Any] | None, max_batch_size: int) -> None:
    if not recipients:
        raise ValidationError("Recipient list is empty")
    if len(recipients) > max_batch_size:
        raise ValidationError(
            f"Batch of {len(recipients)} recipients exceeds the limit of {max_batch_size}"
        )


def check_template_fields(kind: TemplateKind, login_url: str | None) -> None:
    spec = TEMPLATE_SPECS[kind]
    if spec.needs_login_url and not (login_url and login_url.strip()):
        raise ValidationError(f"login_url is required for {kind.value}")


def missing_fields(kind: TemplateKind, recipient: dict[str, Any]) -> list[str]:
    spec = TEMPLATE_SPECS[kind]
    missing = []
    for name in spec.required_fields:
        value = recipient.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def prescreen(
    recipients: list[Any],
    *,
    channel: Channel,
    kind: TemplateKind,
    directory: RecipientDirectory,
    client: ChannelClient,
) -> PrescreenResult:
    """Split recipients into dispatchable items and immediate failures."""
    result = PrescreenResult()

    for recipient in recipients:
        if not isinstance(recipient, dict):
            result.invalid.append((recipient, "Recipient must be an object", None))
            continue

        missing = missing_fields(kind, recipient)
        if missing:
            result.invalid.append(
                (recipient, f"Missing required field(s): {', '.join(missing)}", None)
            )
            continue

        if kind is TemplateKind.WORKER_QR and not str(recipient["qrCodeDataUrl"]).startswith("data:image/"):
            result.invalid.append((recipient, "QR code must be an image data URL", None))
            continue

        try:
            resolved = directory.resolve(channel, kind, recipient)
        except RecipientNotFound as exc:
            result.invalid.append((recipient, str(exc) or "Recipient not found", None))
            continue

        normalized = client.validate_address(resolved.address)
        if normalized is None:
            result.invalid.append(
                (recipient, f"Malformed {channel.value} address", resolved.address)
            )
            continue

        if normalized != resolved.address:
            resolved = ResolvedRecipient(
                address=normalized,
                display_name=resolved.display_name,
                data=resolved.data,
            )
        result.valid.append((recipient, resolved))

    return result
