"""Cross-source booking merge: identity grouping, primary selection, contact pick."""
from ops_bridge.services.merge_engine import (
    BookingSources,
    IdentityArena,
    SourceContact,
    SourceRecord,
    merge_bookings,
)
from ops_bridge.utils.identity import booking_identity_key


def _web_row(**overrides):
    row = {
        "booking_id": "101",
        "booking_ref": "WEB-1",
        "status_v2": "PENDING",
        "status": "waiting",
        "package_id": "7",
        "created_at": "2026-01-10T08:00:00Z",
        "booking_date": "2026-02-01",
        "currency_code": "usd",
        "total_price": "300",
        "number_of_adult": 2,
        "number_of_child": 1,
        "updated_at": "2026-01-10T08:00:00Z",
        "main_contact_name": "Guest",
        "main_contact_email": "ayu@balisnap.id",
        "phone_number": "+62 811 000",
        "meeting_point": "Ubud Palace",
    }
    row.update(overrides)
    return row


def _ops_row(**overrides):
    row = {
        "booking_id": "9001",
        "source": "DIRECT",
        "booking_ref": "web-1",
        "is_paid": True,
        "status": "READY",
        "tour_date": "2026-02-01",
        "currency": "USD",
        "total_price": 300,
        "number_of_adult": 2,
        "number_of_child": 1,
        "paid_at": "2026-01-11T09:00:00Z",
        "updated_at": "2026-01-12T09:00:00Z",
        "main_contact_name": "Ayu Lestari",
        "main_contact_email": "test@example.com",
        "pickup_location": "Hotel Tugu",
    }
    row.update(overrides)
    return row


def _record(source_system: str, status: str = "PAID", payment_score: int = 2) -> SourceRecord:
    return SourceRecord(
        source_system=source_system,
        source_table="t",
        source_pk=source_system,
        channel_code="DIRECT",
        external_booking_ref="WEB-9",
        customer_payment_status=status,
        ops_fulfillment_status="NEW",
        payment_score=payment_score,
        contact=SourceContact(),
    )


def test_two_sources_merge_into_one_paid_booking():
    sources = BookingSources(
        web_bookings=[_web_row()],
        web_payment_summary=[{"booking_id": "101", "has_paid_v2": 0, "has_paid_legacy": 0, "payment_count": 0}],
        ops_bookings=[_ops_row()],
    )
    result = merge_bookings(sources)

    assert len(result.booking_core) == 1
    core = result.booking_core[0]
    assert core["booking_key"] == booking_identity_key("DIRECT", "WEB-1")
    assert core["customer_payment_status"] == "PAID"
    assert result.primaries[core["booking_key"]] == "bstadmin"

    contact = result.booking_contact[0]
    # ops record is newer and its name is real; its email is a placeholder so the web one is used
    assert contact["main_name"] == "Ayu Lestari"
    assert contact["main_email"] == "ayu@balisnap.id"
    assert contact["pickup_location"] == "Hotel Tugu"
    assert contact["is_placeholder_email"] is False

    kinds = sorted(ref["external_ref_kind"] for ref in result.external_refs)
    assert kinds == ["BALISNAP_BOOKING_ID", "BOOKING_REF", "BSTADMIN_BOOKING_ID"]
    assert result.ops_state[0]["is_paid_flag"] is True


def test_equal_score_prefers_ops_system_in_either_order():
    web = _record("balisnap")
    ops = _record("bstadmin")
    for ordering in ([web, ops], [ops, web]):
        arena = IdentityArena()
        for record in ordering:
            key = arena.add(record)
        assert len(arena) == 1
        assert arena.primary(key).source_system == "bstadmin"


def test_higher_score_wins_over_ops_preference():
    arena = IdentityArena()
    key = arena.add(_record("bstadmin", status="PENDING_PAYMENT", payment_score=0))
    arena.add(_record("balisnap", status="PAID", payment_score=1))
    assert arena.primary(key).source_system == "balisnap"


def test_booking_without_items_gets_flagged_synthetic_item():
    sources = BookingSources(web_bookings=[_web_row(booking_ref=None, status_v2="PAID")])
    result = merge_bookings(sources)

    core = result.booking_core[0]
    assert core["external_booking_ref"] == "BS-101"
    assert len(result.booking_items) == 1
    item = result.booking_items[0]
    assert item["snapshot_json"]["synthetic"] is True
    assert item["adult_unit_price"] == 100.0
    assert item["adult_qty"] == 2
    assert item["child_qty"] == 1
    assert result.booking_party[0]["adult_qty"] == 2


def test_itemized_booking_sums_quantities():
    sources = BookingSources(
        web_bookings=[_web_row()],
        web_items=[
            {"booking_item_id": "1", "booking_id": "101", "adult_qty": 1, "child_qty": 0, "total_amount": 100},
            {"booking_item_id": "2", "booking_id": "101", "adult_qty": 1, "child_qty": 1, "total_amount": 200},
        ],
        web_travelers=[{"booking_item_id": "1", "traveler_type": "adult", "first_name": "Ayu"}],
    )
    result = merge_bookings(sources)

    assert len(result.booking_items) == 2
    assert not any((item["snapshot_json"] or {}).get("synthetic") for item in result.booking_items)
    party = result.booking_party[0]
    assert party["adult_qty"] == 2
    assert party["child_qty"] == 1
    assert party["traveler_rows"][0]["firstName"] == "Ayu"


def test_ops_record_without_ref_uses_fallback_and_channel():
    sources = BookingSources(ops_bookings=[_ops_row(booking_ref=None, source="viator", is_paid=False)])
    result = merge_bookings(sources)
    core = result.booking_core[0]
    assert core["channel_code"] == "VIATOR"
    assert core["external_booking_ref"] == "OPS-9001"
    assert core["customer_payment_status"] == "PENDING_PAYMENT"


def test_catalog_variant_resolves_package_ref():
    sources = BookingSources(
        web_bookings=[_web_row()],
        catalog_variants=[{"variant_key": "variant-key-7", "code": "PKG-7"}],
    )
    core = merge_bookings(sources).booking_core[0]
    assert core["package_ref_type"] == "CATALOG_VARIANT"
    assert core["package_ref_key"] == "variant-key-7"
