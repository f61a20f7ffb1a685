"""Operations-side state mirrored from the system of record."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ops_bridge.database import Base
from ops_bridge.utils.time import utc_now


class OpsBookingState(Base):
    __tablename__ = "ops_booking_state"

    booking_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    ops_fulfillment_status: Mapped[str] = mapped_column(String(32), default="NEW")
    assigned_driver_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_paid_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_from_source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class OpsFinanceBridge(Base):
    __tablename__ = "ops_finance_bridge"

    finance_bridge_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_key: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    booking_finance_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pattern_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    settlement_status: Mapped[str] = mapped_column(String(16), default="PENDING")
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
