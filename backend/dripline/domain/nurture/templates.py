from __future__ import annotations

import re
from typing import Mapping

from dripline.domain.contacts.db_models import Contact
from dripline.domain.tenants.db_models import Owner

VARIABLE_RE = re.compile(r"\{\s*([A-Za-z][A-Za-z0-9_.]*)\s*\}")


def render_template(template: str | None, variables: Mapping[str, str]) -> str:
    """Substitute ``{var.path}`` placeholders; unknown variables are left as written."""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else value

    return VARIABLE_RE.sub(_replace, template or "")


def append_footer(body: str, footer: str | None) -> str:
    body = (body or "").rstrip()
    footer = (footer or "").strip()
    if not footer:
        return body
    if not body:
        return footer
    return f"{body}\n\n{footer}"


def first_name(name: str) -> str:
    parts = name.split()
    return parts[0] if parts else ""


def _clean(value: str | None) -> str:
    return (value or "").strip()


def build_template_vars(
    *,
    contact: Contact | None = None,
    owner: Owner | None = None,
    business_name: str | None = None,
    message_from: str | None = None,
    message_to: str | None = None,
    message_body: str | None = None,
) -> dict[str, str]:
    contact_name = _clean(contact.name if contact else None)
    contact_email = _clean(contact.email if contact else None)
    contact_phone = _clean(contact.phone if contact else None)
    contact_id = str(contact.contact_id) if contact and contact.contact_id else ""
    business = _clean(business_name) or _clean(owner.business_name if owner else None)
    business_email = _clean(owner.email if owner else None)
    business_phone = _clean(owner.phone if owner else None)
    owner_name = _clean(owner.name if owner else None)
    message_from = _clean(message_from)
    message_to = _clean(message_to)
    message_body = message_body or ""

    return {
        "contact.id": contact_id,
        "contact.name": contact_name,
        "contact.firstName": first_name(contact_name),
        "contact.email": contact_email,
        "contact.phone": contact_phone,
        "contact.businessName": "",
        "business.name": business,
        "business.email": business_email,
        "business.phone": business_phone,
        "owner.name": owner_name,
        "owner.email": business_email,
        "owner.phone": business_phone,
        "user.name": owner_name,
        "user.email": business_email,
        "user.phone": business_phone,
        "message.from": message_from,
        "message.to": message_to,
        "message.body": message_body,
        # flat aliases
        "name": contact_name,
        "business": business,
        "contactName": contact_name,
        "contactFirstName": first_name(contact_name),
        "contactEmail": contact_email,
        "contactPhone": contact_phone,
        "contactBusinessName": "",
        "businessName": business,
        "businessEmail": business_email,
        "businessPhone": business_phone,
        "ownerName": owner_name,
        "ownerEmail": business_email,
        "ownerPhone": business_phone,
        "userName": owner_name,
        "messageBody": message_body,
        "messageFrom": message_from,
        "messageTo": message_to,
    }
