from erp_engine.core.event_bus import (
    DomainEvent,
    EventBus,
    GoodsReceived,
    InvoiceCreated,
    InvoiceSent,
    PaymentRecorded,
    PurchaseOrderSent,
    QuotationDecided,
    QuotationSubmitted,
    ReceiptGenerated,
    RfqSent,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "RfqSent",
    "QuotationSubmitted",
    "QuotationDecided",
    "PurchaseOrderSent",
    "GoodsReceived",
    "InvoiceCreated",
    "InvoiceSent",
    "PaymentRecorded",
    "ReceiptGenerated",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
