# sitenotify/infra/recipient_directory.py
"""
Recipient directory backed by the request payload itself.

The admin frontend sends full recipient records (name, address fields,
credentials or QR code), so resolving a recipient means picking the address
field for the channel and the display name for the template kind.
"""
from __future__ import annotations

from typing import Any

from sitenotify.core.dispatch.errors import RecipientNotFound
from sitenotify.core.dispatch.models import Channel, ResolvedRecipient, TemplateKind
from sitenotify.core.templates import TEMPLATE_SPECS


class InlineRecipientDirectory:
    def resolve(
        self,
        channel: Channel,
        kind: TemplateKind,
        recipient: dict[str, Any],
    ) -> ResolvedRecipient:
        spec = TEMPLATE_SPECS[kind]
        field_name = spec.address_fields[channel]
        address = recipient.get(field_name)
        if not isinstance(address, str) or not address.strip():
            raise RecipientNotFound(f"Recipient has no {channel.value} address ({field_name})")

        return ResolvedRecipient(
            address=address.strip(),
            display_name=str(recipient.get(spec.name_field, "")).strip(),
            data=dict(recipient),
        )
