from datetime import datetime, timedelta, timezone

import pytest

from dripline.domain.automations import service as automations_service
from dripline.domain.automations.dispatcher import (
    claim_missed_bookings,
    dispatch_event,
    dispatch_inbound_sms,
    dispatch_missed_appointment,
    run_missed_appointment_scan,
)
from dripline.domain.automations.service import append_fired_ids
from dripline.domain.bookings import statuses as booking_statuses
from dripline.domain.bookings.db_models import Booking
from dripline.domain.tenants import service as tenants_service

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingEventRunner:
    def __init__(self, error: Exception | None = None) -> None:
        self.events: list[dict] = []
        self.error = error

    async def run_for_event(self, session, owner_id, trigger_kind, *, contact=None, message=None, event=None):
        self.events.append(
            {"owner_id": owner_id, "trigger_kind": trigger_kind, "contact": contact, "message": message, "event": event}
        )
        if self.error is not None:
            raise self.error
        return 1


async def _owner(session):
    owner = await tenants_service.create_owner(session, business_name="Acme")
    await session.commit()
    return owner.owner_id


async def _booking(session, owner_id, *, ended_minutes_ago, status=booking_statuses.SCHEDULED, name="Jane"):
    end_at = NOW - timedelta(minutes=ended_minutes_ago)
    booking = Booking(
        owner_id=owner_id,
        calendar_id="main",
        contact_name=name,
        contact_email=f"{name.lower()}@example.com",
        status=status,
        start_at=end_at - timedelta(minutes=30),
        end_at=end_at,
    )
    session.add(booking)
    await session.commit()
    return booking


def test_fired_ids_keep_newest_entries():
    assert append_fired_ids(["a", "b"], ["b", "c"], retention=5) == ["a", "b", "c"]
    assert append_fired_ids(["a", "b", "c"], ["d", "e"], retention=3) == ["c", "d", "e"]


@pytest.mark.anyio
async def test_missed_appointment_dispatches_once(async_session_maker):
    runner = RecordingEventRunner()
    async with async_session_maker() as session:
        owner_id = await _owner(session)
        booking = await _booking(session, owner_id, ended_minutes_ago=60)

        assert await dispatch_missed_appointment(session, runner, booking)
        assert not await dispatch_missed_appointment(session, runner, booking)
        document = await automations_service.load_setup(session, owner_id)

    assert len(runner.events) == 1
    event = runner.events[0]
    assert event["trigger_kind"] == "missed_appointment"
    assert event["message"].body == "Missed appointment: Jane (jane@example.com)"
    assert event["event"] == {"bookingId": str(booking.booking_id), "calendarId": "main"}
    assert document.fired_ids == [str(booking.booking_id)]


@pytest.mark.anyio
async def test_scan_selects_window_and_dedupes(async_session_maker):
    runner = RecordingEventRunner()
    async with async_session_maker() as session:
        first_owner = await _owner(session)
        second_owner = await _owner(session)
        await _booking(session, first_owner, ended_minutes_ago=60, name="Ann")
        await _booking(session, first_owner, ended_minutes_ago=120, name="Bob")
        await _booking(session, first_owner, ended_minutes_ago=5, name="Inside")
        await _booking(session, first_owner, ended_minutes_ago=90, status=booking_statuses.COMPLETED, name="Done")
        await _booking(session, first_owner, ended_minutes_ago=3 * 24 * 60, name="Old")
        await _booking(session, second_owner, ended_minutes_ago=30, name="Cy")

        first = await run_missed_appointment_scan(session, runner, now=NOW)
        second = await run_missed_appointment_scan(session, runner, now=NOW)

    assert first == {"owners_touched": 2, "missed_fired": 3, "scanned": 3}
    assert second == {"owners_touched": 0, "missed_fired": 0, "scanned": 3}
    names = sorted(event["contact"].name for event in runner.events)
    assert names == ["Ann", "Bob", "Cy"]


@pytest.mark.anyio
async def test_scan_respects_dispatch_cap(async_session_maker):
    runner = RecordingEventRunner()
    async with async_session_maker() as session:
        owner_id = await _owner(session)
        for index in range(3):
            await _booking(session, owner_id, ended_minutes_ago=60 + index, name=f"Guest{index}")

        first = await run_missed_appointment_scan(session, runner, now=NOW, max_dispatches=2)
        second = await run_missed_appointment_scan(session, runner, now=NOW, max_dispatches=2)
        document = await automations_service.load_setup(session, owner_id)

    assert first["missed_fired"] == 2
    assert second["missed_fired"] == 1
    assert len(document.fired_ids) == 3


@pytest.mark.anyio
async def test_claims_are_bounded_by_retention(async_session_maker):
    async with async_session_maker() as session:
        owner_id = await _owner(session)
        assert await claim_missed_bookings(session, owner_id, ["b1", "b2"], retention=2) == ["b1", "b2"]
        assert await claim_missed_bookings(session, owner_id, ["b2", "b3"], retention=2) == ["b3"]
        document = await automations_service.load_setup(session, owner_id)

    assert document.fired_ids == ["b2", "b3"]


@pytest.mark.anyio
async def test_dispatch_event_swallows_runner_failures(async_session_maker):
    runner = RecordingEventRunner(error=RuntimeError("boom"))
    async with async_session_maker() as session:
        owner_id = await _owner(session)
        ran = await dispatch_event(session, runner, owner_id, "new_lead", event={"source": "form"})

    assert ran == 0
    assert len(runner.events) == 1


@pytest.mark.anyio
async def test_inbound_sms_builds_contact_and_message(async_session_maker):
    runner = RecordingEventRunner()
    async with async_session_maker() as session:
        owner_id = await _owner(session)
        ran = await dispatch_inbound_sms(
            session, runner, owner_id, from_number="+15550001111", to_number="+15559990000", body="STOP"
        )

    assert ran == 1
    [event] = runner.events
    assert event["trigger_kind"] == "inbound_sms"
    assert event["contact"].phone == "+15550001111"
    assert event["message"].sender == "+15550001111"
    assert event["message"].recipient == "+15559990000"
    assert event["message"].body == "STOP"
