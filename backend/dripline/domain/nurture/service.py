from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.contacts import service as contacts_service
from dripline.domain.contacts.db_models import Contact
from dripline.domain.errors import DomainError
from dripline.domain.nurture.db_models import NurtureCampaign, NurtureEnrollment, NurtureStep
from dripline.domain.nurture.statuses import CampaignStatus, EnrollmentStatus, StepKind

logger = logging.getLogger(__name__)

MAX_ENROLL_TAGS = 100


@dataclass(frozen=True)
class DueEnrollment:
    """Snapshot of one due enrollment and its campaign, detached from the session."""

    enrollment_id: uuid.UUID
    owner_id: uuid.UUID
    campaign_id: uuid.UUID
    contact_id: uuid.UUID
    step_index: int
    next_send_at: datetime | None
    campaign_status: CampaignStatus
    subscription_id: str | None
    sms_footer: str
    email_footer: str


@dataclass(frozen=True)
class EnrollmentResult:
    matched: int
    enrolled: int
    dry_run: bool


async def create_campaign(
    session: AsyncSession,
    owner_id: uuid.UUID,
    *,
    name: str,
    status: CampaignStatus = CampaignStatus.DRAFT,
    audience_tags: list[str] | None = None,
    stripe_subscription_id: str | None = None,
    sms_footer: str | None = None,
    email_footer: str = "",
) -> NurtureCampaign:
    campaign = NurtureCampaign(
        owner_id=owner_id,
        name=name,
        status=status,
        audience_tags=list(audience_tags or []),
        stripe_subscription_id=stripe_subscription_id,
        email_footer=email_footer,
    )
    if sms_footer is not None:
        campaign.sms_footer = sms_footer
    session.add(campaign)
    await session.flush()
    return campaign


async def add_step(
    session: AsyncSession,
    campaign: NurtureCampaign,
    *,
    kind: StepKind,
    body: str,
    delay_minutes: int = 0,
    subject: str | None = None,
) -> NurtureStep:
    """Append a step at the next contiguous ordinal."""
    current = await session.scalar(
        sa.select(sa.func.max(NurtureStep.ord)).where(NurtureStep.campaign_id == campaign.campaign_id)
    )
    step = NurtureStep(
        owner_id=campaign.owner_id,
        campaign_id=campaign.campaign_id,
        ord=0 if current is None else current + 1,
        kind=kind,
        delay_minutes=max(0, int(delay_minutes)),
        subject=subject,
        body=body,
    )
    session.add(step)
    await session.flush()
    return step


async def list_steps(
    session: AsyncSession, owner_id: uuid.UUID, campaign_id: uuid.UUID, *, limit: int
) -> list[NurtureStep]:
    result = await session.scalars(
        sa.select(NurtureStep)
        .where(NurtureStep.owner_id == owner_id, NurtureStep.campaign_id == campaign_id)
        .order_by(NurtureStep.ord.asc())
        .limit(limit)
    )
    return list(result.all())


async def load_due_enrollments(session: AsyncSession, *, now: datetime, limit: int) -> list[DueEnrollment]:
    result = await session.execute(
        sa.select(
            NurtureEnrollment.enrollment_id,
            NurtureEnrollment.owner_id,
            NurtureEnrollment.campaign_id,
            NurtureEnrollment.contact_id,
            NurtureEnrollment.step_index,
            NurtureEnrollment.next_send_at,
            NurtureCampaign.status,
            NurtureCampaign.stripe_subscription_id,
            NurtureCampaign.sms_footer,
            NurtureCampaign.email_footer,
        )
        .join(NurtureCampaign, NurtureCampaign.campaign_id == NurtureEnrollment.campaign_id)
        .where(
            NurtureEnrollment.status == EnrollmentStatus.ACTIVE,
            NurtureEnrollment.next_send_at.is_not(None),
            NurtureEnrollment.next_send_at <= now,
        )
        .order_by(NurtureEnrollment.next_send_at.asc(), NurtureEnrollment.enrollment_id.asc())
        .limit(limit)
    )
    return [
        DueEnrollment(
            enrollment_id=row[0],
            owner_id=row[1],
            campaign_id=row[2],
            contact_id=row[3],
            step_index=row[4],
            next_send_at=row[5],
            campaign_status=CampaignStatus(row[6]),
            subscription_id=row[7],
            sms_footer=row[8] or "",
            email_footer=row[9] or "",
        )
        for row in result.all()
    ]


async def _transition(session: AsyncSession, item: DueEnrollment, **values) -> bool:
    """Apply ``values`` only if the enrollment is still where this pass found it."""
    result = await session.execute(
        sa.update(NurtureEnrollment)
        .where(
            NurtureEnrollment.enrollment_id == item.enrollment_id,
            NurtureEnrollment.status == EnrollmentStatus.ACTIVE,
            NurtureEnrollment.step_index == item.step_index,
        )
        .values(updated_at=sa.func.now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def defer_enrollment(
    session: AsyncSession, item: DueEnrollment, *, retry_at: datetime, error: str
) -> bool:
    return await _transition(session, item, next_send_at=retry_at, last_error=error)


async def stop_enrollment(session: AsyncSession, item: DueEnrollment, *, error: str) -> bool:
    return await _transition(
        session, item, status=EnrollmentStatus.STOPPED, next_send_at=None, last_error=error
    )


async def complete_enrollment(session: AsyncSession, item: DueEnrollment) -> bool:
    return await _transition(
        session, item, status=EnrollmentStatus.COMPLETED, next_send_at=None, last_error=None
    )


async def advance_enrollment(
    session: AsyncSession, item: DueEnrollment, *, now: datetime, next_send_at: datetime | None
) -> bool:
    return await _transition(
        session,
        item,
        step_index=item.step_index + 1,
        last_sent_at=now,
        last_error=None,
        status=EnrollmentStatus.ACTIVE if next_send_at is not None else EnrollmentStatus.COMPLETED,
        next_send_at=next_send_at,
    )


async def pause_campaign(session: AsyncSession, owner_id: uuid.UUID, campaign_id: uuid.UUID) -> bool:
    result = await session.execute(
        sa.update(NurtureCampaign)
        .where(
            NurtureCampaign.campaign_id == campaign_id,
            NurtureCampaign.owner_id == owner_id,
            NurtureCampaign.status == CampaignStatus.ACTIVE,
        )
        .values(status=CampaignStatus.PAUSED, updated_at=sa.func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _clean_tags(tags: Iterable[str] | None) -> list[str]:
    cleaned = [tag.strip() for tag in tags or [] if isinstance(tag, str) and tag.strip()]
    return list(dict.fromkeys(cleaned))[:MAX_ENROLL_TAGS]


async def enroll_contacts(
    session: AsyncSession,
    owner_id: uuid.UUID,
    campaign_id: uuid.UUID,
    *,
    now: datetime,
    contact_ids: Iterable[uuid.UUID] | None = None,
    tag_ids: Iterable[str] | None = None,
    dry_run: bool = False,
) -> EnrollmentResult:
    """Enroll contacts into an active campaign.

    Explicit ``contact_ids`` win; otherwise the audience is every contact carrying
    any of ``tag_ids`` (or the campaign's saved audience tags). Re-enrolling an
    existing contact reactivates it without rewinding its step.
    """
    campaign = await session.scalar(
        sa.select(NurtureCampaign).where(
            NurtureCampaign.owner_id == owner_id, NurtureCampaign.campaign_id == campaign_id
        )
    )
    if campaign is None:
        raise DomainError(detail="Campaign not found", title="Not Found")
    if campaign.status != CampaignStatus.ACTIVE:
        raise DomainError(detail="Activate the campaign before enrolling contacts.", title="Campaign inactive")

    explicit = list(dict.fromkeys(contact_ids or []))
    if explicit:
        targets = list(
            (
                await session.scalars(
                    sa.select(Contact.contact_id).where(
                        Contact.owner_id == owner_id, Contact.contact_id.in_(explicit)
                    )
                )
            ).all()
        )
    else:
        tags = _clean_tags(tag_ids) or _clean_tags(campaign.audience_tags)
        if not tags:
            raise DomainError(
                detail="Select at least one audience tag before enrolling.", title="Audience required"
            )
        targets = await contacts_service.contact_ids_with_any_tag(session, owner_id, tags)

    if dry_run:
        return EnrollmentResult(matched=len(targets), enrolled=0, dry_run=True)

    steps = await list_steps(session, owner_id, campaign_id, limit=1)
    first_delay = max(0, steps[0].delay_minutes or 0) if steps else 0
    first_send_at = now + timedelta(minutes=first_delay)

    existing: dict[uuid.UUID, NurtureEnrollment] = {}
    if targets:
        result = await session.scalars(
            sa.select(NurtureEnrollment).where(
                NurtureEnrollment.campaign_id == campaign_id,
                NurtureEnrollment.contact_id.in_(targets),
            )
        )
        existing = {enrollment.contact_id: enrollment for enrollment in result.all()}

    for contact_id in targets:
        enrollment = existing.get(contact_id)
        if enrollment is None:
            session.add(
                NurtureEnrollment(
                    owner_id=owner_id,
                    campaign_id=campaign_id,
                    contact_id=contact_id,
                    status=EnrollmentStatus.ACTIVE,
                    step_index=0,
                    next_send_at=first_send_at,
                )
            )
        else:
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.next_send_at = first_send_at
    await session.flush()
    logger.info(
        "nurture_contacts_enrolled",
        extra={"extra": {"campaign_id": str(campaign_id), "enrolled": len(targets)}},
    )
    return EnrollmentResult(matched=len(targets), enrolled=len(targets), dry_run=False)
