from __future__ import annotations

import uuid
from typing import Iterable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.contacts.db_models import Contact

AUDIENCE_SCAN_LIMIT = 5000


async def get_contact(
    session: AsyncSession, owner_id: uuid.UUID, contact_id: uuid.UUID
) -> Contact | None:
    return await session.scalar(
        sa.select(Contact).where(Contact.owner_id == owner_id, Contact.contact_id == contact_id)
    )


async def find_or_create_contact(
    session: AsyncSession,
    owner_id: uuid.UUID,
    *,
    name: str | None,
    email: str | None,
    phone: str | None,
) -> Contact:
    email = (email or "").strip() or None
    phone = (phone or "").strip() or None
    matchers = []
    if email:
        matchers.append(Contact.email == email)
    if phone:
        matchers.append(Contact.phone == phone)
    if matchers:
        existing = await session.scalar(
            sa.select(Contact)
            .where(Contact.owner_id == owner_id, sa.or_(*matchers))
            .order_by(Contact.created_at.asc())
            .limit(1)
        )
        if existing is not None:
            return existing
    contact = Contact(
        owner_id=owner_id,
        name=(name or "").strip() or phone or email or "Contact",
        email=email,
        phone=phone,
        tags=[],
    )
    session.add(contact)
    await session.flush()
    return contact


async def add_tag(session: AsyncSession, contact: Contact, tag_id: str) -> bool:
    tag_id = tag_id.strip()
    if not tag_id:
        return False
    current = list(contact.tags or [])
    if tag_id in current:
        return False
    # Reassign so the JSON column is flagged dirty.
    contact.tags = [*current, tag_id]
    await session.flush()
    return True


async def contact_ids_with_any_tag(
    session: AsyncSession, owner_id: uuid.UUID, tag_ids: Iterable[str]
) -> list[uuid.UUID]:
    wanted = {tag for tag in tag_ids if tag}
    if not wanted:
        return []
    result = await session.execute(
        sa.select(Contact.contact_id, Contact.tags)
        .where(Contact.owner_id == owner_id)
        .order_by(Contact.created_at.asc())
        .limit(AUDIENCE_SCAN_LIMIT)
    )
    return [contact_id for contact_id, tags in result.all() if wanted.intersection(tags or [])]
