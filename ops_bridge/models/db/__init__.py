from .bookings import BookingCore, BookingContact, BookingParty, BookingItemSnapshot
from .external_refs import ChannelExternalRef
from .ops_state import OpsBookingState, OpsFinanceBridge
from .payments import PaymentEvent
from .catalog import CatalogProduct, CatalogVariant, UnmappedQueue
from .ingest import IngestEventLog, IngestDeadLetter

__all__ = [
    "BookingCore",
    "BookingContact",
    "BookingParty",
    "BookingItemSnapshot",
    "ChannelExternalRef",
    "OpsBookingState",
    "OpsFinanceBridge",
    "PaymentEvent",
    "CatalogProduct",
    "CatalogVariant",
    "UnmappedQueue",
    "IngestEventLog",
    "IngestDeadLetter",
]
