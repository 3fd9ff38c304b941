from __future__ import annotations

from typing import Tuple

from erp_engine.application.workflow_base import Workflow
from erp_engine.core import EventBus, ReceiptGenerated
from erp_engine.domain.contracts import ActorContext
from erp_engine.domain.models import ActorClass, DocumentKind, InvoiceStatus, Receipt
from erp_engine.domain.money import money_str
from erp_engine.errors import GuardFailed, NotFound, ReceiptAlreadyExists
from erp_engine.infrastructure.repositories.base import DocumentRepository, UniqueConstraintViolation


class ReceiptGenerator(Workflow):
    """Issues the single payment receipt of a paid invoice.

    The receipt is keyed on the invoice id, so two concurrent requests for the same
    invoice resolve to one stored receipt and one ``ReceiptAlreadyExists``.
    """

    def __init__(
        self,
        repository: DocumentRepository,
        *,
        event_bus: EventBus | None = None,
        currency: str = "INR",
        default_payment_method: str = "bank_transfer",
    ) -> None:
        super().__init__(repository, event_bus=event_bus, currency=currency)
        self.default_payment_method = default_payment_method

    def generate(
        self,
        actor: ActorContext,
        invoice_id: str,
        *,
        payment_method: str | None = None,
        payment_reference: str | None = None,
        notes: str | None = None,
    ) -> Receipt:
        self._require_actor(actor, ActorClass.BUYER)
        try:
            with self.repository.unit_of_work() as uow:
                invoice = uow.require(DocumentKind.INVOICE, invoice_id)
                if invoice.status != InvoiceStatus.PAID:
                    raise GuardFailed(
                        message_key="invoice_not_paid",
                        details=f"invoice {invoice_id} is {invoice.status.value}",
                    )
                existing = uow.find_by_unique_key(DocumentKind.RECEIPT, invoice.id)
                if existing is not None:
                    raise ReceiptAlreadyExists(invoice.id, payload={"receipt_id": existing.id})
                receipt = Receipt(
                    receipt_number=self._next_number(uow, DocumentKind.RECEIPT),
                    invoice_ref=invoice.id,
                    supplier_ref=invoice.supplier_ref,
                    amount=invoice.total_amount,
                    currency=invoice.currency,
                    payment_method=str(payment_method or "").strip() or self.default_payment_method,
                    payment_reference=payment_reference,
                    notes=notes,
                    generated_by=actor.org_or_supplier_id,
                )
                uow.add(receipt)
        except UniqueConstraintViolation as exc:
            raise ReceiptAlreadyExists(invoice_id, details=f"receipt for invoice {invoice_id} already exists") from exc

        self._log(
            "receipt_generated",
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            invoice_id=invoice.id,
            amount=money_str(receipt.amount),
        )
        self._publish(
            [
                ReceiptGenerated(
                    tenant_id=self.tenant_id,
                    receipt_id=receipt.id,
                    receipt_number=receipt.receipt_number,
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    supplier_ref=receipt.supplier_ref,
                    amount=money_str(receipt.amount),
                    payment_method=receipt.payment_method,
                    currency=receipt.currency,
                )
            ]
        )
        return receipt

    def generate_or_get(self, actor: ActorContext, invoice_id: str, **options) -> Tuple[Receipt, bool]:
        """Idempotent variant for retrying callers: ``(receipt, created)``."""
        try:
            return self.generate(actor, invoice_id, **options), True
        except ReceiptAlreadyExists:
            return self.receipt_for(actor, invoice_id), False

    def receipt_for(self, actor: ActorContext, invoice_id: str) -> Receipt:
        invoice = self.repository.require(DocumentKind.INVOICE, invoice_id)
        self._require_owner(actor, invoice)
        receipt = self.repository.find_by_unique_key(DocumentKind.RECEIPT, invoice.id)
        if receipt is None:
            raise NotFound(details=f"no receipt for invoice {invoice_id}")
        return receipt
