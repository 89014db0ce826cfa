from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Enum, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from syncrelay.models.base import Base
from syncrelay.models.enums import OptoutStatus


class OptoutEntry(Base):
    __tablename__ = "optout_registry"

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    phone_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    status: Mapped[OptoutStatus] = mapped_column(
        Enum(OptoutStatus, name="optout_status", create_type=False), nullable=False
    )
    source: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_event_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
