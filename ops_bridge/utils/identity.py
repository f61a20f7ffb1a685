"""Deterministic canonical keys.

Keys are RFC 4122 name-based (version 5) UUIDs: SHA-1 over the namespace bytes
followed by the UTF-8 name, truncated to 128 bits with the version and variant
bits overwritten. Identical (namespace, name) pairs always give the same key, so
re-running a backfill never mints a second canonical row.
"""
from __future__ import annotations

import uuid

NS_BOOKING = "1396788e-dfe4-558e-977f-cbac85111c4c"
NS_CATALOG_PRODUCT = "1b2c8dda-1d99-57f5-bdc1-b9fb772d8186"
NS_CATALOG_VARIANT = "6b647a19-b987-5dd4-8c1e-94bceb859370"
NS_PAYMENT = "2dfcb1f0-47c5-5823-9bc3-c281e0fd702f"


def derive_key(namespace: str, name: str) -> str:
    """Return the textual v5 UUID for ``name`` within ``namespace``.

    Raises ``ValueError`` for a malformed namespace constant.
    """
    return str(uuid.uuid5(uuid.UUID(namespace), str(name)))


def booking_identity_key(channel_code: str, external_ref: str) -> str:
    return derive_key(NS_BOOKING, f"canonical:booking_identity:{channel_code}:{external_ref}")


def booking_ref_key(channel_code: str, external_ref: str) -> str:
    return derive_key(NS_BOOKING, f"BOOKING_REF:{channel_code}:{external_ref}")


def source_ref_key(kind: str, channel_code: str, source_pk: str) -> str:
    return derive_key(NS_BOOKING, f"{kind}:{channel_code}:{source_pk}")


def finance_bridge_key(booking_finance_id: str) -> str:
    return derive_key(NS_PAYMENT, f"bstadmin:booking_finances:{booking_finance_id}")


def unmapped_queue_key(queue_type: str, source_system: str, source_table: str, source_pk: str, reason_code: str) -> str:
    return derive_key(
        NS_CATALOG_VARIANT,
        f"unmapped:{queue_type}:{source_system}:{source_table}:{source_pk}:{reason_code}",
    )


__all__ = [
    "NS_BOOKING",
    "NS_CATALOG_PRODUCT",
    "NS_CATALOG_VARIANT",
    "NS_PAYMENT",
    "derive_key",
    "booking_identity_key",
    "booking_ref_key",
    "finance_bridge_key",
    "source_ref_key",
    "unmapped_queue_key",
]
