from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.tenants.db_models import Owner
from dripline.settings import settings


async def get_owner(session: AsyncSession, owner_id: uuid.UUID) -> Owner | None:
    return await session.get(Owner, owner_id)


def resolve_from_name(owner: Owner | None) -> str:
    business_name = (owner.business_name or "").strip() if owner else ""
    return business_name or settings.default_business_name


async def create_owner(
    session: AsyncSession,
    *,
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    business_name: str | None = None,
) -> Owner:
    owner = Owner(name=name, email=email, phone=phone, business_name=business_name)
    session.add(owner)
    await session.flush()
    return owner
