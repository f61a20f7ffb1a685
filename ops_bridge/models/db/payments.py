"""Canonical payment events."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ops_bridge.database import Base
from ops_bridge.utils.time import utc_now


class PaymentEvent(Base):
    __tablename__ = "payment_event"

    payment_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    # No foreign key: orphaned payments are a gate finding, not a write error.
    booking_key: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    payment_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD")
    method: Mapped[str] = mapped_column(String(32), default="UNKNOWN")
    gateway: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_capture_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status_raw: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_status_v2: Mapped[str] = mapped_column(String(32), default="PENDING_PAYMENT")
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
