from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from syncrelay.models.base import Base


class IdentityMapping(Base):
    __tablename__ = "identity_mappings"

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    crm_contact_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    telephony_contact_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    phone_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_direction: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'bidirectional'"))

    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
