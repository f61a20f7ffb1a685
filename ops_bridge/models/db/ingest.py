"""Ingest event log and dead-letter store."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ops_bridge.database import Base
from ops_bridge.utils.time import utc_now



class IngestEventLog(Base):
    __tablename__ = "ingest_event_log"
    __table_args__ = (
        Index(
            "ix_ingest_secondary_dedup",
            "source_enum", "external_booking_ref", "event_type", "event_time_normalized",
        ),
    )

    event_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    nonce: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_enum: Mapped[str] = mapped_column(String(16), nullable=False)
    channel_code: Mapped[str] = mapped_column(String(16), nullable=False)
    external_booking_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_time_normalized: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signature_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    process_status: Mapped[str] = mapped_column(String(16), default="RECEIVED", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    request_received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    dead_letter: Mapped[IngestDeadLetter | None] = relationship(
        "IngestDeadLetter", back_populates="event", uselist=False
    )


class IngestDeadLetter(Base):
    __tablename__ = "ingest_dead_letter"

    dead_letter_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_key: Mapped[str] = mapped_column(
        String(36), ForeignKey("ingest_event_log.event_key"), unique=True, nullable=False
    )
    reason_code: Mapped[str] = mapped_column(String(64), nullable=False)
    reason_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    poison_message: Mapped[bool] = mapped_column(Boolean, default=False)
    replay_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="OPEN", index=True)
    first_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    next_replay_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    event: Mapped[IngestEventLog] = relationship("IngestEventLog", back_populates="dead_letter")
