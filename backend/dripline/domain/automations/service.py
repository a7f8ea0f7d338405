from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.automations.db_models import AutomationSetup
from dripline.domain.automations.graph import Automation, parse_automations
from dripline.domain.errors import DomainError

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


def parse_schedule_state(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(key): value for key, value in raw.items() if isinstance(value, str)}


def parse_fired_ids(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [value for value in raw if isinstance(value, str) and value]


def append_fired_ids(existing: Iterable[str], new_ids: Iterable[str], retention: int) -> list[str]:
    """Append ids preserving first-seen order, keeping only the newest ``retention``."""
    merged = list(dict.fromkeys([*existing, *new_ids]))
    return merged[-max(1, retention):]


@dataclass
class SetupDocument:
    owner_id: uuid.UUID
    data: dict[str, Any] = field(default_factory=dict)
    revision: int | None = None

    @property
    def exists(self) -> bool:
        return self.revision is not None

    @property
    def automations(self) -> list[Automation]:
        return parse_automations(self.data.get("automations"))

    @property
    def schedule_state(self) -> dict[str, str]:
        return parse_schedule_state(self.data.get("scheduleState"))

    @property
    def fired_ids(self) -> list[str]:
        return parse_fired_ids(self.data.get("missedAppointmentFiredIds"))


def _select_setups():
    # Plain column rows so a reload never hands back a stale identity-mapped object.
    return sa.select(AutomationSetup.owner_id, AutomationSetup.data_json, AutomationSetup.revision)


def _document(row) -> SetupDocument:
    data = row.data_json if isinstance(row.data_json, dict) else {}
    return SetupDocument(owner_id=row.owner_id, data=dict(data), revision=row.revision)


async def load_setup(session: AsyncSession, owner_id: uuid.UUID) -> SetupDocument:
    row = (await session.execute(_select_setups().where(AutomationSetup.owner_id == owner_id))).first()
    if row is None:
        return SetupDocument(owner_id=owner_id)
    return _document(row)


async def list_setups(session: AsyncSession, *, limit: int) -> list[SetupDocument]:
    result = await session.execute(_select_setups().order_by(AutomationSetup.owner_id).limit(limit))
    return [_document(row) for row in result.all()]


async def save_setup(session: AsyncSession, document: SetupDocument, data: dict[str, Any]) -> bool:
    """Replace the document only if nobody wrote it since it was loaded.

    Returns ``False`` when the compare-and-set lost; the caller should roll back.
    """
    payload = {**data, "version": DOCUMENT_VERSION}
    if document.revision is None:
        session.add(AutomationSetup(owner_id=document.owner_id, data_json=payload, revision=1))
        try:
            await session.flush()
        except IntegrityError:
            logger.info(
                "automation_setup_claim_lost",
                extra={"extra": {"owner_id": str(document.owner_id), "reason": "insert_conflict"}},
            )
            return False
        document.data, document.revision = payload, 1
        return True

    result = await session.execute(
        sa.update(AutomationSetup)
        .where(
            AutomationSetup.owner_id == document.owner_id,
            AutomationSetup.revision == document.revision,
        )
        .values(data_json=payload, revision=document.revision + 1, updated_at=sa.func.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "automation_setup_claim_lost",
            extra={"extra": {"owner_id": str(document.owner_id), "revision": document.revision}},
        )
        return False
    document.data, document.revision = payload, document.revision + 1
    return True


async def save_automations(
    session: AsyncSession, owner_id: uuid.UUID, automations: list[dict[str, Any]]
) -> SetupDocument:
    """Store a tenant's automation definitions, keeping schedule and fired-set bookkeeping."""
    document = await load_setup(session, owner_id)
    if not await save_setup(session, document, {**document.data, "automations": automations}):
        raise DomainError(detail="Automations were modified concurrently", title="Conflict")
    return document
