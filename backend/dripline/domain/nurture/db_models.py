from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from dripline.domain.nurture.statuses import CampaignStatus, EnrollmentStatus, StepKind
from dripline.infra.db import Base, UUID_TYPE

DEFAULT_SMS_FOOTER = "Reply STOP to opt out."


class NurtureCampaign(Base):
    __tablename__ = "nurture_campaigns"

    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("owners.owner_id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CampaignStatus] = mapped_column(
        sa.Enum(CampaignStatus, name="nurture_campaign_status"),
        nullable=False,
        default=CampaignStatus.DRAFT,
        server_default=CampaignStatus.DRAFT.value,
    )
    audience_tags: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list, server_default=sa.text("'[]'")
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255))
    sms_footer: Mapped[str] = mapped_column(
        Text, nullable=False, default=DEFAULT_SMS_FOOTER, server_default=DEFAULT_SMS_FOOTER
    )
    email_footer: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_nurture_campaigns_owner_status", "owner_id", "status"),)


class NurtureStep(Base):
    __tablename__ = "nurture_steps"

    step_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("owners.owner_id", ondelete="CASCADE"),
        nullable=False,
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("nurture_campaigns.campaign_id", ondelete="CASCADE"),
        nullable=False,
    )
    ord: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[StepKind] = mapped_column(sa.Enum(StepKind, name="nurture_step_kind"), nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    subject: Mapped[str | None] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("campaign_id", "ord", name="uq_nurture_steps_campaign_ord"),
        Index("ix_nurture_steps_owner_campaign", "owner_id", "campaign_id"),
    )


class NurtureEnrollment(Base):
    __tablename__ = "nurture_enrollments"

    enrollment_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("owners.owner_id", ondelete="CASCADE"),
        nullable=False,
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("nurture_campaigns.campaign_id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("contacts.contact_id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[EnrollmentStatus] = mapped_column(
        sa.Enum(EnrollmentStatus, name="nurture_enrollment_status"),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
        server_default=EnrollmentStatus.ACTIVE.value,
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_send_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("campaign_id", "contact_id", name="uq_nurture_enrollments_campaign_contact"),
        Index("ix_nurture_enrollments_status_next_send", "status", "next_send_at"),
        Index("ix_nurture_enrollments_owner_contact", "owner_id", "contact_id"),
    )
