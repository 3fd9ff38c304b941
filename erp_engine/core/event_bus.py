from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Type

from erp_engine.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)
    tenant_id: str = ""

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)
        object.__setattr__(self, "tenant_id", str(self.tenant_id or "").strip() or "unknown")


@dataclass(frozen=True, kw_only=True)
class RfqSent(DomainEvent):
    rfq_id: str
    rfq_number: str
    title: str = ""
    supplier_refs: tuple[str, ...] = ()
    deadline_date: str | None = None


@dataclass(frozen=True, kw_only=True)
class QuotationSubmitted(DomainEvent):
    quotation_id: str
    submission_number: str
    supplier_ref: str
    rfq_id: str | None = None
    po_id: str | None = None
    total_amount: str = "0.00"


@dataclass(frozen=True, kw_only=True)
class QuotationDecided(DomainEvent):
    quotation_id: str
    submission_number: str
    supplier_ref: str
    decision: str
    eligibility_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class PurchaseOrderSent(DomainEvent):
    purchase_order_id: str
    po_number: str
    supplier_ref: str
    total_amount: str = "0.00"
    currency: str = "INR"
    expected_delivery_date: str | None = None


@dataclass(frozen=True, kw_only=True)
class GoodsReceived(DomainEvent):
    purchase_order_id: str
    po_number: str
    supplier_ref: str
    line_id: str
    quantity: str
    status: str


@dataclass(frozen=True, kw_only=True)
class InvoiceCreated(DomainEvent):
    invoice_id: str
    invoice_number: str
    supplier_ref: str
    status: str
    total_amount: str = "0.00"
    currency: str = "INR"
    quotation_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class InvoiceSent(DomainEvent):
    invoice_id: str
    invoice_number: str
    supplier_ref: str
    total_amount: str = "0.00"
    currency: str = "INR"
    due_date: str | None = None


@dataclass(frozen=True, kw_only=True)
class PaymentRecorded(DomainEvent):
    invoice_id: str
    invoice_number: str
    supplier_ref: str
    amount: str
    amount_paid: str
    status: str
    currency: str = "INR"


@dataclass(frozen=True, kw_only=True)
class ReceiptGenerated(DomainEvent):
    receipt_id: str
    receipt_number: str
    invoice_id: str
    invoice_number: str
    supplier_ref: str
    amount: str
    payment_method: str
    currency: str = "INR"


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("erp_engine")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()
