"""Canonical booking tables: core row, contact, party and item snapshots."""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from ops_bridge.database import Base
from ops_bridge.utils.time import utc_now

Money = Numeric(12, 2, asdecimal=False)


class BookingCore(Base):
    __tablename__ = "booking_core"
    # Not unique on purpose: duplicate identities must stay observable to the gate.
    __table_args__ = (Index("ix_booking_core_identity", "channel_code", "external_booking_ref"),)

    booking_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    channel_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    source_enum_compat: Mapped[str | None] = mapped_column(String(16), nullable=True)
    external_booking_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    booking_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    booking_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tour_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD")
    total_price: Mapped[float] = mapped_column(Money, default=0)
    number_of_adult: Mapped[int] = mapped_column(Integer, default=0)
    number_of_child: Mapped[int] = mapped_column(Integer, default=0)
    customer_payment_status: Mapped[str] = mapped_column(String(32), default="PENDING_PAYMENT", index=True)
    ops_fulfillment_status: Mapped[str] = mapped_column(String(32), default="NEW", index=True)
    package_ref_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    package_ref_key: Mapped[str | None] = mapped_column(String(36), nullable=True)
    legacy_package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BookingContact(Base):
    __tablename__ = "booking_contact"

    booking_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    main_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    main_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pickup_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_point: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_placeholder_name: Mapped[bool] = mapped_column(Boolean, default=False)
    is_placeholder_email: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_from_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BookingParty(Base):
    __tablename__ = "booking_party"

    booking_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    adult_qty: Mapped[int] = mapped_column(Integer, default=0)
    child_qty: Mapped[int] = mapped_column(Integer, default=0)
    infant_qty: Mapped[int] = mapped_column(Integer, default=0)
    traveler_rows: Mapped[list | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BookingItemSnapshot(Base):
    __tablename__ = "booking_item_snapshot"

    booking_item_key: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_key: Mapped[str] = mapped_column(String(36), index=True)
    variant_key: Mapped[str | None] = mapped_column(String(36), nullable=True)
    variant_external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    departure_external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD")
    adult_qty: Mapped[int] = mapped_column(Integer, default=0)
    child_qty: Mapped[int] = mapped_column(Integer, default=0)
    infant_qty: Mapped[int] = mapped_column(Integer, default=0)
    adult_unit_price: Mapped[float] = mapped_column(Money, default=0)
    child_unit_price: Mapped[float] = mapped_column(Money, default=0)
    discount_amount: Mapped[float] = mapped_column(Money, default=0)
    tax_amount: Mapped[float] = mapped_column(Money, default=0)
    total_amount: Mapped[float] = mapped_column(Money, default=0)
    snapshot_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
