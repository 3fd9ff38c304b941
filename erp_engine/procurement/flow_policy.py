from __future__ import annotations

from typing import Dict, List

from erp_engine.domain.models import (
    ActorClass,
    DocumentKind,
    InvoiceStatus,
    PurchaseOrderStatus,
    QuotationStatus,
    RfqStatus,
)
from erp_engine.domain.state_machine import StateMachine, TransitionRule


BUYER = ActorClass.BUYER
SUPPLIER = ActorClass.SUPPLIER
SYSTEM = ActorClass.SYSTEM


def _rfq_ready_to_send(rfq) -> bool:
    return bool(rfq.lines) and bool(rfq.invitations)


def _rfq_all_responded(rfq) -> bool:
    statuses = [invitation.status.value for invitation in rfq.invitations]
    return bool(statuses) and "pending" not in statuses and "quoted" in statuses


def _po_has_lines(purchase_order) -> bool:
    return bool(purchase_order.lines)


def _po_partially_received(purchase_order) -> bool:
    return purchase_order.any_line_received and not purchase_order.all_lines_received


def _po_fully_received(purchase_order) -> bool:
    return purchase_order.all_lines_received


def _invoice_settled(invoice) -> bool:
    return invoice.amount_paid == invoice.total_amount


def _invoice_unpaid(invoice) -> bool:
    return invoice.amount_paid == 0


def _invoice_total_valid(invoice) -> bool:
    return invoice.total_amount >= 0


RFQ_MACHINE = StateMachine(
    name=DocumentKind.RFQ.value,
    status_type=RfqStatus,
    initial=RfqStatus.DRAFT,
    terminal=(RfqStatus.CLOSED, RfqStatus.CANCELLED),
    rules=(
        TransitionRule(RfqStatus.DRAFT, RfqStatus.SENT, BUYER, _rfq_ready_to_send, "rfq_not_ready_to_send"),
        TransitionRule(RfqStatus.SENT, RfqStatus.IN_PROGRESS, SYSTEM),
        TransitionRule(RfqStatus.IN_PROGRESS, RfqStatus.RECEIVED, SYSTEM, _rfq_all_responded),
        TransitionRule(RfqStatus.SENT, RfqStatus.CLOSED, BUYER),
        TransitionRule(RfqStatus.IN_PROGRESS, RfqStatus.CLOSED, BUYER),
        TransitionRule(RfqStatus.RECEIVED, RfqStatus.CLOSED, BUYER),
        TransitionRule(RfqStatus.DRAFT, RfqStatus.CANCELLED, BUYER),
        TransitionRule(RfqStatus.SENT, RfqStatus.CANCELLED, BUYER),
    ),
)


QUOTATION_MACHINE = StateMachine(
    name=DocumentKind.QUOTATION.value,
    status_type=QuotationStatus,
    initial=QuotationStatus.SUBMITTED,
    terminal=(QuotationStatus.ACCEPTED, QuotationStatus.REJECTED),
    rules=(
        TransitionRule(QuotationStatus.SUBMITTED, QuotationStatus.UNDER_REVIEW, BUYER),
        TransitionRule(QuotationStatus.UNDER_REVIEW, QuotationStatus.UNDER_REVIEW, BUYER),
        TransitionRule(QuotationStatus.UNDER_REVIEW, QuotationStatus.ACCEPTED, BUYER),
        TransitionRule(QuotationStatus.UNDER_REVIEW, QuotationStatus.REJECTED, BUYER),
    ),
)


PURCHASE_ORDER_MACHINE = StateMachine(
    name=DocumentKind.PURCHASE_ORDER.value,
    status_type=PurchaseOrderStatus,
    initial=PurchaseOrderStatus.DRAFT,
    terminal=(PurchaseOrderStatus.RECEIVED, PurchaseOrderStatus.CANCELLED),
    rules=(
        TransitionRule(PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.SENT, BUYER, _po_has_lines, "lines_required"),
        TransitionRule(PurchaseOrderStatus.SENT, PurchaseOrderStatus.CONFIRMED, SUPPLIER),
        TransitionRule(
            PurchaseOrderStatus.SENT,
            PurchaseOrderStatus.PARTIALLY_RECEIVED,
            BUYER,
            _po_partially_received,
        ),
        TransitionRule(
            PurchaseOrderStatus.SENT,
            PurchaseOrderStatus.RECEIVED,
            BUYER,
            _po_fully_received,
            "purchase_order_not_fully_received",
        ),
        TransitionRule(
            PurchaseOrderStatus.CONFIRMED,
            PurchaseOrderStatus.PARTIALLY_RECEIVED,
            BUYER,
            _po_partially_received,
        ),
        TransitionRule(
            PurchaseOrderStatus.CONFIRMED,
            PurchaseOrderStatus.RECEIVED,
            BUYER,
            _po_fully_received,
            "purchase_order_not_fully_received",
        ),
        TransitionRule(
            PurchaseOrderStatus.PARTIALLY_RECEIVED,
            PurchaseOrderStatus.RECEIVED,
            BUYER,
            _po_fully_received,
            "purchase_order_not_fully_received",
        ),
        TransitionRule(PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.CANCELLED, BUYER),
        TransitionRule(PurchaseOrderStatus.SENT, PurchaseOrderStatus.CANCELLED, BUYER),
        TransitionRule(PurchaseOrderStatus.CONFIRMED, PurchaseOrderStatus.CANCELLED, BUYER),
        TransitionRule(PurchaseOrderStatus.PARTIALLY_RECEIVED, PurchaseOrderStatus.CANCELLED, BUYER),
    ),
)


INVOICE_MACHINE = StateMachine(
    name=DocumentKind.INVOICE.value,
    status_type=InvoiceStatus,
    initial=InvoiceStatus.DRAFT,
    terminal=(InvoiceStatus.PAID, InvoiceStatus.CANCELLED),
    rules=(
        TransitionRule(InvoiceStatus.DRAFT, InvoiceStatus.PENDING, SUPPLIER, _invoice_total_valid, "total_negative"),
        TransitionRule(InvoiceStatus.PENDING, InvoiceStatus.APPROVED, BUYER),
        TransitionRule(InvoiceStatus.APPROVED, InvoiceStatus.PAID, BUYER, _invoice_settled, "invoice_not_fully_paid"),
        TransitionRule(InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED, SUPPLIER),
        TransitionRule(InvoiceStatus.PENDING, InvoiceStatus.CANCELLED, BUYER, _invoice_unpaid, "invoice_has_payments"),
        TransitionRule(InvoiceStatus.APPROVED, InvoiceStatus.CANCELLED, BUYER, _invoice_unpaid, "invoice_has_payments"),
    ),
)


STATE_MACHINES: Dict[DocumentKind, StateMachine] = {
    DocumentKind.RFQ: RFQ_MACHINE,
    DocumentKind.QUOTATION: QUOTATION_MACHINE,
    DocumentKind.PURCHASE_ORDER: PURCHASE_ORDER_MACHINE,
    DocumentKind.INVOICE: INVOICE_MACHINE,
}


def machine_for(kind: DocumentKind | str) -> StateMachine | None:
    try:
        return STATE_MACHINES.get(DocumentKind(kind))
    except ValueError:
        return None


def allowed_transitions(kind: DocumentKind | str, status: str | None, actor_class: ActorClass | None = None) -> List[str]:
    machine = machine_for(kind)
    if machine is None or not status:
        return []
    try:
        return machine.allowed_targets(status, actor_class)
    except ValueError:
        return []


def flow_meta(kind: DocumentKind | str, status: str | None, actor_class: ActorClass | None = None) -> Dict[str, object]:
    machine = machine_for(kind)
    terminal = False
    if machine is not None and status:
        terminal = status in {item.value for item in machine.terminal}
    return {
        "kind": str(getattr(kind, "value", kind)),
        "status": status,
        "terminal": terminal,
        "allowed_transitions": allowed_transitions(kind, status, actor_class),
    }
