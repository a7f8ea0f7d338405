from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from dripline.domain.bookings import statuses
from dripline.infra.db import Base, UUID_TYPE


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("owners.owner_id", ondelete="CASCADE"),
        nullable=False,
    )
    calendar_id: Mapped[str | None] = mapped_column(String(64))
    contact_id: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE)
    contact_name: Mapped[str | None] = mapped_column(String(255))
    contact_email: Mapped[str | None] = mapped_column(String(255))
    contact_phone: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=statuses.SCHEDULED, server_default=statuses.SCHEDULED
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_bookings_status_end_at", "status", "end_at"),
        Index("ix_bookings_owner_id", "owner_id"),
        sa.CheckConstraint("end_at >= start_at", name="ck_bookings_end_after_start"),
        sa.CheckConstraint(
            "status IN (" + ", ".join(f"'{value}'" for value in sorted(statuses.STATUSES)) + ")",
            name="ck_bookings_status",
        ),
    )
