"""Inline event dispatch into tenant automations.

Generic events run once per call; the caller owns de-duplication. Missed
appointments are calendar derived and may be seen by many scans, so each
booking id is claimed in the tenant's fired set before it is dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.automations import service as automations_service
from dripline.domain.automations.actions import AutomationActionRunner, EventContact, EventMessage
from dripline.domain.automations.statuses import TRIGGER_INBOUND_SMS, TRIGGER_MISSED_APPOINTMENT
from dripline.domain.bookings import statuses as booking_statuses
from dripline.domain.bookings.db_models import Booking
from dripline.infra.metrics import metrics
from dripline.settings import settings
from dripline.shared.budget import PassBudget

logger = logging.getLogger(__name__)


def _clamp(value: int | None, default: int, low: int, high: int) -> int:
    return max(low, min(high, int(value or default)))


async def dispatch_event(
    session: AsyncSession,
    action_runner: AutomationActionRunner,
    owner_id: uuid.UUID,
    trigger_kind: str,
    *,
    contact: EventContact | None = None,
    message: EventMessage | None = None,
    event: dict | None = None,
    timeout: float | None = None,
) -> int:
    """Run the tenant's automations for one event. Never raises; returns automations run."""
    timeout = timeout if timeout is not None else settings.collaborator_timeout_seconds
    try:
        ran = await asyncio.wait_for(
            action_runner.run_for_event(
                session, owner_id, trigger_kind, contact=contact, message=message, event=event
            ),
            timeout=timeout,
        )
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "automation_event_failed",
            extra={
                "extra": {
                    "owner_id": str(owner_id),
                    "trigger_kind": trigger_kind,
                    "reason": type(exc).__name__,
                }
            },
        )
        metrics.record_automation_event(trigger_kind, "error")
        return 0
    metrics.record_automation_event(trigger_kind, "dispatched")
    return ran


async def dispatch_inbound_sms(
    session: AsyncSession,
    action_runner: AutomationActionRunner,
    owner_id: uuid.UUID,
    *,
    from_number: str,
    to_number: str,
    body: str,
) -> int:
    return await dispatch_event(
        session,
        action_runner,
        owner_id,
        TRIGGER_INBOUND_SMS,
        contact=EventContact(name=from_number, phone=from_number),
        message=EventMessage(sender=from_number, recipient=to_number, body=body),
    )


@dataclass(frozen=True)
class MissedAppointment:
    owner_id: uuid.UUID
    booking_id: str
    contact: EventContact
    message: EventMessage
    event: dict


def missed_appointment_from_booking(booking: Booking) -> MissedAppointment:
    """Snapshot a booking into the event payload; ORM rows may expire on commit."""
    reach = booking.contact_email or booking.contact_phone or ""
    return MissedAppointment(
        owner_id=booking.owner_id,
        booking_id=str(booking.booking_id),
        contact=EventContact(
            id=str(booking.contact_id) if booking.contact_id else None,
            name=booking.contact_name,
            email=booking.contact_email,
            phone=booking.contact_phone,
        ),
        message=EventMessage(
            sender=reach,
            recipient="",
            body=f"Missed appointment: {booking.contact_name or '(unknown)'} ({reach})",
        ),
        event={"bookingId": str(booking.booking_id), "calendarId": booking.calendar_id},
    )


async def claim_missed_bookings(
    session: AsyncSession,
    owner_id: uuid.UUID,
    booking_ids: list[str],
    *,
    max_claims: int | None = None,
    retention: int | None = None,
) -> list[str]:
    """Record unseen booking ids in the tenant's fired set; returns the ids this call now owns."""
    retention = retention or settings.missed_appointment_fired_retention
    document = await automations_service.load_setup(session, owner_id)
    seen = set(document.fired_ids)
    fresh = [booking_id for booking_id in dict.fromkeys(booking_ids) if booking_id not in seen]
    if max_claims is not None:
        fresh = fresh[:max_claims]
    if not fresh:
        return []
    next_ids = automations_service.append_fired_ids(document.fired_ids, fresh, retention)
    if not await automations_service.save_setup(
        session, document, {**document.data, "missedAppointmentFiredIds": next_ids}
    ):
        await session.rollback()
        return []
    await session.commit()
    return fresh


async def _dispatch_missed(
    session: AsyncSession, action_runner: AutomationActionRunner, missed: MissedAppointment
) -> None:
    await dispatch_event(
        session,
        action_runner,
        missed.owner_id,
        TRIGGER_MISSED_APPOINTMENT,
        contact=missed.contact,
        message=missed.message,
        event=missed.event,
    )


async def dispatch_missed_appointment(
    session: AsyncSession,
    action_runner: AutomationActionRunner,
    booking: Booking,
) -> bool:
    """Dispatch one booking as a missed appointment at most once per retention window."""
    missed = missed_appointment_from_booking(booking)
    if not await claim_missed_bookings(session, missed.owner_id, [missed.booking_id]):
        metrics.record_automation_event(TRIGGER_MISSED_APPOINTMENT, "duplicate")
        return False
    await _dispatch_missed(session, action_runner, missed)
    return True


async def run_missed_appointment_scan(
    session: AsyncSession,
    action_runner: AutomationActionRunner,
    *,
    now: datetime,
    grace_minutes: int | None = None,
    lookback_hours: int | None = None,
    limit: int | None = None,
    max_dispatches: int | None = None,
    budget: PassBudget | None = None,
) -> dict[str, int]:
    grace_minutes = _clamp(grace_minutes, settings.missed_appointment_grace_minutes, 5, 24 * 60)
    lookback_hours = _clamp(lookback_hours, settings.missed_appointment_lookback_hours, 1, 24 * 14)
    limit = _clamp(limit, settings.missed_appointment_scan_limit, 1, 2000)
    max_dispatches = max(1, int(max_dispatches or settings.missed_appointment_max_per_pass))
    budget = budget or PassBudget(None)

    cutoff = now - timedelta(minutes=grace_minutes)
    lookback_start = now - timedelta(hours=lookback_hours)
    bookings = (
        await session.scalars(
            sa.select(Booking)
            .where(
                Booking.status == booking_statuses.SCHEDULED,
                Booking.end_at < cutoff,
                Booking.end_at >= lookback_start,
            )
            .order_by(Booking.end_at.desc())
            .limit(limit)
        )
    ).all()
    scanned = len(bookings)

    by_owner: dict[uuid.UUID, list[MissedAppointment]] = defaultdict(list)
    for booking in bookings:
        missed = missed_appointment_from_booking(booking)
        by_owner[missed.owner_id].append(missed)

    owners_touched = 0
    missed_fired = 0
    for owner_id, items in by_owner.items():
        remaining = max_dispatches - missed_fired
        if remaining <= 0 or budget.exhausted():
            break
        claimed = set(
            await claim_missed_bookings(
                session, owner_id, [item.booking_id for item in items], max_claims=remaining
            )
        )
        if not claimed:
            continue
        owners_touched += 1
        for item in items:
            if item.booking_id in claimed:
                await _dispatch_missed(session, action_runner, item)
                missed_fired += 1

    logger.info(
        "missed_appointments_scanned",
        extra={"extra": {"scanned": scanned, "owners_touched": owners_touched, "missed_fired": missed_fired}},
    )
    return {"owners_touched": owners_touched, "missed_fired": missed_fired, "scanned": scanned}
