from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List

from erp_engine.application.workflow_base import Workflow
from erp_engine.core import EventBus, InvoiceCreated, InvoiceSent, PaymentRecorded
from erp_engine.domain.contracts import ActorContext, InvoiceCreateInput
from erp_engine.domain.models import (
    ActorClass,
    DocumentKind,
    InvoiceStatus,
    LineItem,
    PaymentEntry,
    QuotationStatus,
    VendorInvoice,
    parse_date,
    parse_lines,
    utc_now,
)
from erp_engine.domain.money import ZERO, money_str, quantize
from erp_engine.domain.totals import DocumentTotals, aggregate, aggregate_declared
from erp_engine.errors import Forbidden, GuardFailed, OverpaymentError, ValidationError
from erp_engine.infrastructure.repositories.base import DocumentRepository, UniqueConstraintViolation
from erp_engine.procurement.flow_policy import INVOICE_MACHINE


OVERDUE = "overdue"
_OVERDUE_DISPLAY_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.APPROVED)


def _as_date(now: date | datetime | None) -> date:
    if now is None:
        return utc_now().date()
    if isinstance(now, datetime):
        return now.date()
    return now


def is_overdue(invoice: VendorInvoice, now: date | datetime | None = None) -> bool:
    """Derived at read time, never stored."""
    return invoice.status != InvoiceStatus.PAID and _as_date(now) > invoice.due_date


def display_status(invoice: VendorInvoice, now: date | datetime | None = None) -> str:
    if invoice.status in _OVERDUE_DISPLAY_STATUSES and is_overdue(invoice, now):
        return OVERDUE
    return invoice.status.value


def _drop_draft_lines(invoice: VendorInvoice, _uow) -> None:
    invoice.lines = []


class InvoiceWorkflow(Workflow):
    machine = INVOICE_MACHINE.with_side_effects({(InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED): _drop_draft_lines})

    def __init__(
        self,
        repository: DocumentRepository,
        *,
        event_bus: EventBus | None = None,
        currency: str = "INR",
        payment_terms_days: int = 30,
    ) -> None:
        super().__init__(repository, event_bus=event_bus, currency=currency)
        self.payment_terms_days = int(payment_terms_days)

    def create_manual(self, actor: ActorContext, create_input: InvoiceCreateInput) -> VendorInvoice:
        """Supplier-authored invoice, itemized or from declared totals; starts as draft."""
        self._require_actor(actor, ActorClass.SUPPLIER)
        invoice_date = parse_date(create_input.invoice_date) or utc_now().date()
        due_date = parse_date(create_input.due_date)
        if due_date is None:
            raise ValidationError(details="due_date is required")
        if due_date < invoice_date:
            raise ValidationError(
                message_key="due_date_before_invoice_date",
                details=f"due_date={due_date} invoice_date={invoice_date}",
            )

        lines = parse_lines(create_input.lines)
        shipping = quantize(create_input.shipping_charges or ZERO)
        document_discount = quantize(create_input.discount_amount or ZERO)
        if lines:
            totals = aggregate(lines, shipping, document_discount)
        elif create_input.declared_totals is not None:
            totals = aggregate_declared(
                create_input.declared_totals.subtotal,
                create_input.declared_totals.tax_amount,
                shipping,
                document_discount,
            )
        else:
            raise ValidationError(message_key="lines_required", details="lines or declared totals are required")
        if totals.total < 0:
            raise ValidationError(message_key="total_negative", details=f"total={totals.total}")

        po_ref = str(create_input.po_ref or "").strip() or None
        with self.repository.unit_of_work() as uow:
            if po_ref:
                purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, po_ref)
                if purchase_order.supplier_ref != actor.org_or_supplier_id:
                    raise Forbidden(
                        message_key="purchase_order_supplier_mismatch",
                        details=f"purchase order {po_ref} belongs to another supplier",
                    )
            invoice = VendorInvoice(
                invoice_number=self._next_number(uow, DocumentKind.INVOICE),
                supplier_ref=actor.org_or_supplier_id,
                po_ref=po_ref,
                invoice_date=invoice_date,
                due_date=due_date,
                currency=self.currency,
                lines=lines,
                shipping_charges=shipping,
                discount_amount=document_discount,
                file_ref=create_input.file_ref,
                notes=create_input.notes,
            )
            self._apply_totals(invoice, totals)
            uow.add(invoice)

        self._log("invoice_created", invoice_id=invoice.id, invoice_number=invoice.invoice_number, source="manual")
        self._publish([self._created_event(invoice)])
        return invoice

    def create_from_quotation(self, actor: ActorContext, quotation_id: str) -> VendorInvoice:
        """Raise the single invoice an accepted quotation is eligible for; starts as pending."""
        try:
            with self.repository.unit_of_work() as uow:
                quotation = uow.require(DocumentKind.QUOTATION, quotation_id)
                self._require_owner(actor, quotation)
                if quotation.status != QuotationStatus.ACCEPTED:
                    raise GuardFailed(
                        message_key="quotation_not_accepted",
                        details=f"quotation {quotation_id} is {quotation.status.value}",
                    )
                eligibility = uow.find_by_unique_key(DocumentKind.INVOICE_ELIGIBILITY, quotation.id)
                if eligibility is None:
                    raise GuardFailed(message_key="quotation_not_accepted", details=f"no eligibility for {quotation_id}")
                if eligibility.invoice_ref:
                    raise GuardFailed(
                        message_key="invoice_already_generated",
                        details=f"quotation {quotation_id} already invoiced",
                        payload={"invoice_id": eligibility.invoice_ref},
                    )

                lines = [LineItem.from_dict(line.to_dict()) for line in quotation.lines]
                totals = aggregate(lines) if lines else None
                if totals is None or totals.total != quotation.total_amount:
                    # The accepted amount wins; lines that do not add up to it are not carried.
                    lines = []
                    totals = aggregate_declared(quotation.total_amount)
                invoice_date = utc_now().date()
                invoice = VendorInvoice(
                    invoice_number=self._next_number(uow, DocumentKind.INVOICE),
                    supplier_ref=quotation.supplier_ref,
                    quotation_ref=quotation.id,
                    po_ref=quotation.po_ref,
                    invoice_date=invoice_date,
                    due_date=invoice_date + timedelta(days=self.payment_terms_days),
                    currency=quotation.currency,
                    lines=lines,
                    status=InvoiceStatus.PENDING,
                    notes=f"Generated from quotation {quotation.submission_number}",
                )
                self._apply_totals(invoice, totals)
                uow.add(invoice)
                eligibility.invoice_ref = invoice.id
                uow.save(eligibility, eligibility.version)
        except UniqueConstraintViolation as exc:
            raise GuardFailed(
                message_key="invoice_already_generated",
                details=f"quotation {quotation_id} already invoiced",
            ) from exc

        self._log(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            source="quotation",
            quotation_id=quotation_id,
        )
        self._publish([self._created_event(invoice)])
        return invoice

    def send(self, actor: ActorContext, invoice_id: str) -> VendorInvoice:
        with self.repository.unit_of_work() as uow:
            invoice = uow.require(DocumentKind.INVOICE, invoice_id)
            self._require_owner(actor, invoice)
            self.machine.transition(invoice, InvoiceStatus.PENDING, actor, uow)
            uow.save(invoice, invoice.version)
        self._publish(
            [
                InvoiceSent(
                    tenant_id=self.tenant_id,
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    supplier_ref=invoice.supplier_ref,
                    total_amount=money_str(invoice.total_amount),
                    currency=invoice.currency,
                    due_date=invoice.due_date.isoformat(),
                )
            ]
        )
        return invoice

    def approve(self, actor: ActorContext, invoice_id: str) -> VendorInvoice:
        with self.repository.unit_of_work() as uow:
            invoice = uow.require(DocumentKind.INVOICE, invoice_id)
            self.machine.transition(invoice, InvoiceStatus.APPROVED, actor, uow)
            if invoice.balance_due == ZERO:
                # Nothing left to pay, so approval settles the invoice.
                self.machine.transition(invoice, InvoiceStatus.PAID, actor, uow)
            uow.save(invoice, invoice.version)
        if invoice.status == InvoiceStatus.PAID:
            self._log("invoice_settled_on_approval", invoice_id=invoice.id, invoice_number=invoice.invoice_number)
        return invoice

    def cancel(self, actor: ActorContext, invoice_id: str) -> VendorInvoice:
        with self.repository.unit_of_work() as uow:
            invoice = uow.require(DocumentKind.INVOICE, invoice_id)
            self._require_owner(actor, invoice)
            self.machine.transition(invoice, InvoiceStatus.CANCELLED, actor, uow)
            uow.save(invoice, invoice.version)
        return invoice

    def record_payment(
        self,
        actor: ActorContext,
        invoice_id: str,
        amount,
        *,
        method: str | None = None,
        reference: str | None = None,
    ) -> VendorInvoice:
        self._require_actor(actor, ActorClass.BUYER)
        payment = quantize(amount)
        if payment <= 0:
            raise ValidationError(message_key="payment_amount_not_positive", details=f"amount={payment}")

        with self.repository.unit_of_work() as uow:
            invoice = uow.require(DocumentKind.INVOICE, invoice_id)
            if payment > invoice.balance_due:
                raise OverpaymentError(
                    details=f"payment {payment} exceeds balance {invoice.balance_due}",
                    payload={"balance_due": money_str(invoice.balance_due)},
                )
            if invoice.status != InvoiceStatus.APPROVED:
                raise GuardFailed(
                    message_key="invoice_not_payable",
                    details=f"invoice {invoice_id} is {invoice.status.value}",
                )
            invoice.amount_paid += payment
            invoice.payments.append(
                PaymentEntry(
                    amount=payment,
                    method=method,
                    reference=reference,
                    recorded_by=actor.org_or_supplier_id,
                )
            )
            if invoice.amount_paid == invoice.total_amount:
                self.machine.transition(invoice, InvoiceStatus.PAID, actor, uow)
            uow.save(invoice, invoice.version)

        self._log(
            "payment_recorded",
            invoice_id=invoice.id,
            amount=money_str(payment),
            amount_paid=money_str(invoice.amount_paid),
            status=invoice.status.value,
        )
        self._publish(
            [
                PaymentRecorded(
                    tenant_id=self.tenant_id,
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    supplier_ref=invoice.supplier_ref,
                    amount=money_str(payment),
                    amount_paid=money_str(invoice.amount_paid),
                    status=invoice.status.value,
                    currency=invoice.currency,
                )
            ]
        )
        return invoice

    def get(self, actor: ActorContext, invoice_id: str) -> VendorInvoice:
        invoice = self.repository.require(DocumentKind.INVOICE, invoice_id)
        self._require_owner(actor, invoice)
        return invoice

    def list_visible(
        self,
        actor: ActorContext,
        *,
        status: str | None = None,
        overdue: bool = False,
        now: date | datetime | None = None,
    ) -> List[VendorInvoice]:
        supplier_ref = actor.org_or_supplier_id if actor.is_supplier else None
        invoices = self.repository.query(DocumentKind.INVOICE, status=status, supplier_ref=supplier_ref)
        if actor.is_buyer:
            invoices = [invoice for invoice in invoices if invoice.status != InvoiceStatus.DRAFT]
        if overdue:
            invoices = [invoice for invoice in invoices if display_status(invoice, now) == OVERDUE]
        return invoices

    @staticmethod
    def _apply_totals(invoice: VendorInvoice, totals: DocumentTotals) -> None:
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.total_tax
        invoice.total_amount = totals.total

    def _created_event(self, invoice: VendorInvoice) -> InvoiceCreated:
        return InvoiceCreated(
            tenant_id=self.tenant_id,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            supplier_ref=invoice.supplier_ref,
            status=invoice.status.value,
            total_amount=money_str(invoice.total_amount),
            currency=invoice.currency,
            quotation_id=invoice.quotation_ref,
        )
