"""Central Enum definitions for canonical and ingest states.

Columns store the ``.value`` strings so reports and gate queries can read them
without importing Python enums.
"""
from __future__ import annotations
import enum


class ChannelCode(str, enum.Enum):
    DIRECT = "DIRECT"
    GYG = "GYG"
    VIATOR = "VIATOR"
    BOKUN = "BOKUN"
    TRIPDOTCOM = "TRIPDOTCOM"
    MANUAL = "MANUAL"


class PaymentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OpsFulfillmentStatus(str, enum.Enum):
    NEW = "NEW"
    READY = "READY"
    ATTENTION = "ATTENTION"
    UPDATED = "UPDATED"
    COMPLETED = "COMPLETED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class PackageRefType(str, enum.Enum):
    CATALOG_VARIANT = "CATALOG_VARIANT"
    LEGACY_PACKAGE = "LEGACY_PACKAGE"


class ExternalRefKind(str, enum.Enum):
    BOOKING_REF = "BOOKING_REF"
    BALISNAP_BOOKING_ID = "BALISNAP_BOOKING_ID"
    BSTADMIN_BOOKING_ID = "BSTADMIN_BOOKING_ID"


class SettlementStatus(str, enum.Enum):
    PENDING = "PENDING"
    SETTLED = "SETTLED"

# ---------------------------- Catalog mapping ---------------------------- #

class UnmappedQueueType(str, enum.Enum):
    PRODUCT_MAPPING = "PRODUCT_MAPPING"
    VARIANT_MAPPING = "VARIANT_MAPPING"
    CATALOG_EXTENDED_METADATA = "CATALOG_EXTENDED_METADATA"


class UnmappedStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

# --------------------------------- Ingest -------------------------------- #

class IngestEventType(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    CANCELLED = "CANCELLED"


class IngestProcessStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class DeadLetterStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    READY = "READY"
    REPLAYING = "REPLAYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


__all__ = [
    "ChannelCode",
    "PaymentStatus",
    "OpsFulfillmentStatus",
    "PackageRefType",
    "ExternalRefKind",
    "SettlementStatus",
    "UnmappedQueueType",
    "UnmappedStatus",
    "IngestEventType",
    "IngestProcessStatus",
    "DeadLetterStatus",
]
