# sitenotify/core/templates.py
"""
Recipient field layouts and localized message texts per template kind.

Recipient payloads arrive in the admin frontend's wire format (camelCase),
e.g. a worker QR recipient::

    {"workerName": "Chan Tai Man", "workerId": "W-0012",
     "workerEmail": "chan@example.com", "qrCodeDataUrl": "data:image/png;base64,..."}
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sitenotify.core.dispatch.models import Channel, ResolvedRecipient, TemplateKind


@dataclass(frozen=True)
class TemplateSpec:
    kind: TemplateKind
    address_fields: dict[Channel, str]
    name_field: str
    required_fields: tuple[str, ...]
    needs_login_url: bool = False


TEMPLATE_SPECS: dict[TemplateKind, TemplateSpec] = {
    TemplateKind.WORKER_QR: TemplateSpec(
        kind=TemplateKind.WORKER_QR,
        address_fields={Channel.EMAIL: "workerEmail", Channel.WHATSAPP: "workerWhatsApp"},
        name_field="workerName",
        required_fields=("workerName", "workerId", "qrCodeDataUrl"),
    ),
    TemplateKind.DISTRIBUTOR_ACCOUNT: TemplateSpec(
        kind=TemplateKind.DISTRIBUTOR_ACCOUNT,
        address_fields={Channel.EMAIL: "email", Channel.WHATSAPP: "whatsapp"},
        name_field="name",
        required_fields=("name", "username", "password"),
        needs_login_url=True,
    ),
    TemplateKind.GUARD_ACCOUNT: TemplateSpec(
        kind=TemplateKind.GUARD_ACCOUNT,
        address_fields={Channel.EMAIL: "guardEmail", Channel.WHATSAPP: "guardWhatsApp"},
        name_field="guardName",
        required_fields=("guardName", "username", "password"),
        needs_login_url=True,
    ),
}


_SUBJECTS: dict[TemplateKind, dict[str, str]] = {
    TemplateKind.WORKER_QR: {
        "zh-TW": "工人二維碼 - {name} ({worker_id})",
        "zh-CN": "工人二维码 - {name} ({worker_id})",
        "en-US": "Worker QR Code - {name} ({worker_id})",
    },
    TemplateKind.DISTRIBUTOR_ACCOUNT: {
        "zh-TW": "分判商帳號資訊 - {name}",
        "zh-CN": "分判商账号信息 - {name}",
        "en-US": "Subcontractor Account Details - {name}",
    },
    TemplateKind.GUARD_ACCOUNT: {
        "zh-TW": "門衛帳號資訊 - {name}",
        "zh-CN": "门卫账号信息 - {name}",
        "en-US": "Guard Account Details - {name}",
    },
}

_GREETINGS = {
    "zh-TW": "{name} 您好：",
    "zh-CN": "{name} 您好：",
    "en-US": "Dear {name},",
}

_QR_BODIES = {
    "zh-TW": "您的工人二維碼已生成（工人編號：{worker_id}），請查收附件並於進出工地時出示。",
    "zh-CN": "您的工人二维码已生成（工人编号：{worker_id}），请查收附件并于进出工地时出示。",
    "en-US": "Your worker QR code (worker ID: {worker_id}) is attached. "
             "Please present it when entering or leaving the site.",
}

_ACCOUNT_BODIES = {
    "zh-TW": "您的系統帳號已建立。\n用戶名：{username}\n密碼：{password}\n登入網址：{login_url}\n"
             "請於首次登入後修改密碼。",
    "zh-CN": "您的系统账号已创建。\n用户名：{username}\n密码：{password}\n登录网址：{login_url}\n"
             "请于首次登录后修改密码。",
    "en-US": "Your account has been created.\nUsername: {username}\nPassword: {password}\n"
             "Login URL: {login_url}\nPlease change your password after the first login.",
}

# WhatsApp template language code and template-name suffix per UI language
WHATSAPP_LANGUAGES: dict[str, tuple[str, str]] = {
    "zh-TW": ("zh_HK", "_tw"),
    "zh-CN": ("zh_CN", "_cn"),
    "en-US": ("en", "_en"),
}


def render_email(
    kind: TemplateKind,
    language: str,
    recipient: ResolvedRecipient,
    *,
    login_url: str | None = None,
) -> tuple[str, str]:
    """Return (subject, plain-text body) for one recipient."""
    data = recipient.data
    fields: dict[str, Any] = {
        "name": recipient.display_name,
        "worker_id": data.get("workerId", ""),
        "username": data.get("username", ""),
        "password": data.get("password", ""),
        "login_url": login_url or "",
    }
    subject = _SUBJECTS[kind][language].format(**fields)
    greeting = _GREETINGS[language].format(**fields)
    if kind is TemplateKind.WORKER_QR:
        body = _QR_BODIES[language].format(**fields)
    else:
        body = _ACCOUNT_BODIES[language].format(**fields)
    return subject, f"{greeting}\n\n{body}\n"


def whatsapp_template(base_name: str, language: str) -> tuple[str, str]:
    """Return (template name, language code) for the WhatsApp template API."""
    code, suffix = WHATSAPP_LANGUAGES[language]
    if base_name.endswith(suffix):
        return base_name, code
    return base_name + suffix, code
