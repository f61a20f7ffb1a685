import pytest

from ops_bridge.services.status_rules import (
    aggregate_payment_status,
    is_placeholder_email,
    is_placeholder_name,
    normalize_channel_code,
    normalize_method,
    to_ops_status_ops_system,
    to_ops_status_web_system,
    to_payment_status,
)


@pytest.mark.parametrize(
    "status_v2,legacy,expected",
    [
        ("CONFIRMED", None, "PAID"),
        ("completed", None, "PAID"),
        ("REFUNDED", "PAID", "REFUNDED"),
        (None, "captured", "PAID"),
        (None, "CANCELLED", "FAILED"),
        ("DRAFT", None, "DRAFT"),
        ("weird", "also weird", "PENDING_PAYMENT"),
    ],
)
def test_payment_status_vocabulary(status_v2, legacy, expected):
    assert to_payment_status(status_v2, legacy) == expected


def test_paid_flag_is_lowest_priority():
    assert to_payment_status(None, None, paid_flag=True) == "PAID"
    # a classified status string wins over the boolean flag
    assert to_payment_status("FAILED", None, paid_flag=True) == "FAILED"


def test_ops_status_mapping():
    assert to_ops_status_ops_system("done") == "DONE"
    assert to_ops_status_ops_system("something") == "NEW"
    assert to_ops_status_web_system("cancelled", "PAID") == "CANCELLED"
    assert to_ops_status_web_system(None, "PAID") == "READY"
    assert to_ops_status_web_system(None, "PENDING_PAYMENT") == "NEW"


def test_channel_and_method_normalization():
    assert normalize_channel_code("gyg") == "GYG"
    assert normalize_channel_code("walk-in") == "MANUAL"
    assert normalize_channel_code(None) == "MANUAL"
    assert normalize_method("PayPal Express") == "PAYPAL"
    assert normalize_method(None) == "UNKNOWN"


def test_aggregate_priority():
    assert aggregate_payment_status(["PAID", "REFUNDED"]) == "REFUNDED"
    assert aggregate_payment_status(["FAILED", "PAID"]) == "PAID"
    assert aggregate_payment_status(["PENDING_PAYMENT"]) == "PENDING_PAYMENT"
    assert aggregate_payment_status([]) == "PENDING_PAYMENT"


def test_placeholders():
    assert is_placeholder_name("Guest")
    assert is_placeholder_name("")
    assert not is_placeholder_name("Made Wirawan")
    assert is_placeholder_email("someone@example.com")
    assert not is_placeholder_email("made@balisnap.id")
