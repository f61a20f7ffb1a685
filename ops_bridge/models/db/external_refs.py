"""Source-id to canonical-key mapping rows."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ops_bridge.database import Base
from ops_bridge.utils.time import utc_now


class ChannelExternalRef(Base):
    __tablename__ = "channel_external_refs"
    __table_args__ = (
        UniqueConstraint(
            "entity_type", "channel_code", "external_ref_kind", "external_ref",
            name="uq_channel_external_ref",
        ),
    )

    external_ref_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    channel_code: Mapped[str] = mapped_column(String(16), nullable=False)
    external_ref_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    external_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    source_system: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_table: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_pk: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
