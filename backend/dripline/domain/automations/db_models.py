from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from dripline.infra.db import Base, UUID_TYPE


class AutomationSetup(Base):
    """Per-tenant automations document.

    ``data_json`` holds ``{version, automations, scheduleState,
    missedAppointmentFiredIds}``. Writers bump ``revision`` with a
    compare-and-set so overlapping passes cannot both claim the same work.
    """

    __tablename__ = "automation_setups"

    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("owners.owner_id", ondelete="CASCADE"),
        primary_key=True,
    )
    data_json: Mapped[dict] = mapped_column(
        sa.JSON(),
        nullable=False,
        default=dict,
        server_default=sa.text("'{}'"),
    )
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
