from __future__ import annotations

import logging
from typing import Any, Dict

from erp_engine.application import email_templates
from erp_engine.core import (
    EventBus,
    InvoiceCreated,
    InvoiceSent,
    PaymentRecorded,
    PurchaseOrderSent,
    QuotationDecided,
    ReceiptGenerated,
    RfqSent,
    get_event_bus,
)
from erp_engine.infrastructure.notifier import LoggingNotifier, Notifier
from erp_engine.observability import observe_notification_failed


_LOGGER = logging.getLogger("erp_engine")


class NotificationDispatcher:
    """Turns committed domain events into ``Notifier.notify`` calls.

    Runs after the unit of work has committed, so a failing notifier is logged and
    counted but never undoes the transition that produced the event.
    """

    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        organization_name: str = "Buyer Organization",
        event_bus: EventBus | None = None,
    ) -> None:
        self.notifier = notifier or LoggingNotifier()
        self.organization_name = organization_name
        self.event_bus = event_bus or get_event_bus()

    def register(self) -> "NotificationDispatcher":
        self.event_bus.subscribe(RfqSent, self.on_rfq_sent)
        self.event_bus.subscribe(PurchaseOrderSent, self.on_purchase_order_sent)
        self.event_bus.subscribe(QuotationDecided, self.on_quotation_decided)
        self.event_bus.subscribe(InvoiceCreated, self.on_invoice_created)
        self.event_bus.subscribe(InvoiceSent, self.on_invoice_sent)
        self.event_bus.subscribe(PaymentRecorded, self.on_payment_recorded)
        self.event_bus.subscribe(ReceiptGenerated, self.on_receipt_generated)
        return self

    def _send(self, recipient: str, template_kind: str, message: Dict[str, str], **context: Any) -> bool:
        payload = dict(message)
        payload.update(context)
        try:
            self.notifier.notify(recipient, template_kind, payload)
        except Exception:  # noqa: BLE001
            observe_notification_failed(template_kind)
            _LOGGER.exception(
                "notification_failed",
                extra={"recipient": recipient, "template_kind": template_kind},
            )
            return False
        return True

    def on_rfq_sent(self, event: RfqSent) -> None:
        message = email_templates.rfq_invitation(
            organization_name=self.organization_name,
            rfq_number=event.rfq_number,
            title=event.title,
            deadline_date=event.deadline_date,
        )
        for supplier_ref in event.supplier_refs:
            self._send(supplier_ref, email_templates.RFQ_INVITATION, message, rfq_id=event.rfq_id)

    def on_purchase_order_sent(self, event: PurchaseOrderSent) -> None:
        message = email_templates.purchase_order(
            organization_name=self.organization_name,
            po_number=event.po_number,
            total_amount=event.total_amount,
            currency=event.currency,
            expected_delivery_date=event.expected_delivery_date,
        )
        self._send(event.supplier_ref, email_templates.PURCHASE_ORDER, message, purchase_order_id=event.purchase_order_id)

    def on_quotation_decided(self, event: QuotationDecided) -> None:
        message = email_templates.quotation_decision(
            organization_name=self.organization_name,
            submission_number=event.submission_number,
            decision=event.decision,
        )
        self._send(event.supplier_ref, email_templates.QUOTATION_DECISION, message, quotation_id=event.quotation_id)

    def on_invoice_created(self, event: InvoiceCreated) -> None:
        # Drafts stay with the supplier until sent; generated invoices go straight to the buyer.
        if event.status != "pending":
            return
        message = email_templates.invoice_submitted(
            invoice_number=event.invoice_number,
            supplier_ref=event.supplier_ref,
            total_amount=event.total_amount,
            currency=event.currency,
        )
        self._send(event.tenant_id, email_templates.INVOICE_SUBMITTED, message, invoice_id=event.invoice_id)

    def on_invoice_sent(self, event: InvoiceSent) -> None:
        message = email_templates.invoice_submitted(
            invoice_number=event.invoice_number,
            supplier_ref=event.supplier_ref,
            total_amount=event.total_amount,
            currency=event.currency,
            due_date=event.due_date,
        )
        self._send(event.tenant_id, email_templates.INVOICE_SUBMITTED, message, invoice_id=event.invoice_id)

    def on_payment_recorded(self, event: PaymentRecorded) -> None:
        message = email_templates.payment_recorded(
            organization_name=self.organization_name,
            invoice_number=event.invoice_number,
            amount=event.amount,
            amount_paid=event.amount_paid,
            currency=event.currency,
        )
        self._send(event.supplier_ref, email_templates.PAYMENT_RECORDED, message, invoice_id=event.invoice_id)

    def on_receipt_generated(self, event: ReceiptGenerated) -> None:
        message = email_templates.receipt_generated(
            organization_name=self.organization_name,
            receipt_number=event.receipt_number,
            invoice_number=event.invoice_number,
            amount=event.amount,
            currency=event.currency,
            payment_method=event.payment_method,
        )
        self._send(event.supplier_ref, email_templates.RECEIPT_GENERATED, message, receipt_id=event.receipt_id)
