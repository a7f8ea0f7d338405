from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from dripline.domain.contacts.db_models import Contact
from dripline.domain.errors import DomainError
from dripline.domain.nurture import service as nurture_service
from dripline.domain.nurture.db_models import NurtureEnrollment
from dripline.domain.nurture.statuses import CampaignStatus, EnrollmentStatus, StepKind
from dripline.domain.tenants import service as tenants_service

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _plain(value):
    return value.replace(tzinfo=None) if value is not None and value.tzinfo else value


async def _setup(session, *, status=CampaignStatus.ACTIVE, audience_tags=("lead",)):
    owner = await tenants_service.create_owner(session, business_name="Acme")
    campaign = await nurture_service.create_campaign(
        session, owner.owner_id, name="Welcome", status=status, audience_tags=list(audience_tags)
    )
    await nurture_service.add_step(session, campaign, kind=StepKind.SMS, body="Hi", delay_minutes=30)
    await nurture_service.add_step(session, campaign, kind=StepKind.EMAIL, body="Hello", subject="Hey", delay_minutes=60)
    contacts = [
        Contact(owner_id=owner.owner_id, name="Lead One", phone="+15550000001", tags=["lead"]),
        Contact(owner_id=owner.owner_id, name="Lead Two", phone="+15550000002", tags=["lead", "vip"]),
        Contact(owner_id=owner.owner_id, name="Customer", phone="+15550000003", tags=["customer"]),
    ]
    session.add_all(contacts)
    await session.flush()
    return owner.owner_id, campaign, contacts


@pytest.mark.anyio
async def test_steps_get_contiguous_ordinals(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, _ = await _setup(session)
        steps = await nurture_service.list_steps(session, owner_id, campaign.campaign_id, limit=10)

    assert [(step.ord, step.kind) for step in steps] == [(0, StepKind.SMS), (1, StepKind.EMAIL)]


@pytest.mark.anyio
async def test_enroll_by_audience_tags(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, contacts = await _setup(session)
        result = await nurture_service.enroll_contacts(session, owner_id, campaign.campaign_id, now=NOW)
        await session.commit()

    assert (result.matched, result.enrolled, result.dry_run) == (2, 2, False)
    async with async_session_maker() as session:
        enrollments = (await session.scalars(sa.select(NurtureEnrollment))).all()
    assert {enrollment.contact_id for enrollment in enrollments} == {contacts[0].contact_id, contacts[1].contact_id}
    for enrollment in enrollments:
        assert enrollment.step_index == 0
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert _plain(enrollment.next_send_at) == _plain(NOW + timedelta(minutes=30))


@pytest.mark.anyio
async def test_explicit_tags_override_campaign_audience(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, _ = await _setup(session)
        result = await nurture_service.enroll_contacts(
            session, owner_id, campaign.campaign_id, now=NOW, tag_ids=["vip"], dry_run=True
        )
        count = await session.scalar(sa.select(sa.func.count()).select_from(NurtureEnrollment))

    assert (result.matched, result.enrolled, result.dry_run) == (1, 0, True)
    assert count == 0


@pytest.mark.anyio
async def test_reenroll_reactivates_without_rewinding(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, contacts = await _setup(session)
        target = [contacts[0].contact_id]
        await nurture_service.enroll_contacts(session, owner_id, campaign.campaign_id, now=NOW, contact_ids=target)
        await session.commit()
        await session.execute(
            sa.update(NurtureEnrollment).values(
                status=EnrollmentStatus.STOPPED, step_index=1, next_send_at=None
            )
        )
        await session.commit()

    later = NOW + timedelta(days=1)
    async with async_session_maker() as session:
        await nurture_service.enroll_contacts(session, owner_id, campaign.campaign_id, now=later, contact_ids=target)
        await session.commit()

    async with async_session_maker() as session:
        [enrollment] = (await session.scalars(sa.select(NurtureEnrollment))).all()
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.step_index == 1
    assert _plain(enrollment.next_send_at) == _plain(later + timedelta(minutes=30))


@pytest.mark.anyio
async def test_enrollment_requires_active_campaign(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, _ = await _setup(session, status=CampaignStatus.DRAFT)
        with pytest.raises(DomainError) as excinfo:
            await nurture_service.enroll_contacts(session, owner_id, campaign.campaign_id, now=NOW)

    assert excinfo.value.detail == "Activate the campaign before enrolling contacts."


@pytest.mark.anyio
async def test_enrollment_requires_audience(async_session_maker):
    async with async_session_maker() as session:
        owner_id, campaign, _ = await _setup(session, audience_tags=())
        with pytest.raises(DomainError) as excinfo:
            await nurture_service.enroll_contacts(session, owner_id, campaign.campaign_id, now=NOW, tag_ids=[" "])

    assert excinfo.value.detail == "Select at least one audience tag before enrolling."


@pytest.mark.anyio
async def test_unknown_campaign(async_session_maker):
    async with async_session_maker() as session:
        other_owner = await tenants_service.create_owner(session)
        _, foreign_campaign, _ = await _setup(session)
        with pytest.raises(DomainError) as excinfo:
            await nurture_service.enroll_contacts(session, other_owner.owner_id, foreign_campaign.campaign_id, now=NOW)

    assert excinfo.value.detail == "Campaign not found"
