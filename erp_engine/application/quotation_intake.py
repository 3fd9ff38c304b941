from __future__ import annotations

from decimal import Decimal
from typing import List

from erp_engine.application.rfq_workflow import RfqWorkflow
from erp_engine.application.workflow_base import Workflow
from erp_engine.core import EventBus, QuotationDecided, QuotationSubmitted
from erp_engine.domain.contracts import ActorContext, QuotationSubmitInput
from erp_engine.domain.models import (
    ActorClass,
    DocumentKind,
    InvoiceEligibility,
    Quotation,
    QuotationStatus,
    QuotationType,
    parse_lines,
    utc_now,
)
from erp_engine.domain.money import money_str, quantize
from erp_engine.domain.totals import aggregate
from erp_engine.errors import ConcurrencyConflict, Forbidden, ValidationError
from erp_engine.infrastructure.file_store import FileStore, InMemoryFileStore
from erp_engine.infrastructure.repositories.base import DocumentRepository, UniqueConstraintViolation
from erp_engine.procurement.flow_policy import QUOTATION_MACHINE


DECISIONS = {
    "accept": QuotationStatus.ACCEPTED,
    "reject": QuotationStatus.REJECTED,
}


def _open_invoice_eligibility(quotation: Quotation, uow) -> None:
    uow.add(
        InvoiceEligibility(
            quotation_ref=quotation.id,
            supplier_ref=quotation.supplier_ref,
            amount=quotation.total_amount,
        )
    )


class QuotationIntake(Workflow):
    """Supplier quotations: intake, buyer review and the accept/reject decision.

    ``file_upload`` quotations carry an opaque document, so their total is taken
    from the caller. ``manual_entry`` quotations are itemized and their total is
    derived from the lines unless the supplier declared one.
    """

    machine = QUOTATION_MACHINE.with_side_effects(
        {(QuotationStatus.UNDER_REVIEW, QuotationStatus.ACCEPTED): _open_invoice_eligibility}
    )

    def __init__(
        self,
        repository: DocumentRepository,
        *,
        event_bus: EventBus | None = None,
        currency: str = "INR",
        file_store: FileStore | None = None,
        rfq_workflow: RfqWorkflow | None = None,
    ) -> None:
        super().__init__(repository, event_bus=event_bus, currency=currency)
        self.file_store = file_store or InMemoryFileStore()
        self.rfqs = rfq_workflow or RfqWorkflow(repository, event_bus=self.event_bus, currency=currency)

    def submit(self, actor: ActorContext, submit_input: QuotationSubmitInput) -> Quotation:
        self._require_actor(actor, ActorClass.SUPPLIER)
        try:
            quotation_type = QuotationType(str(submit_input.quotation_type or "").strip())
        except ValueError:
            raise ValidationError(
                message_key="quotation_type_invalid",
                details=f"quotation_type={submit_input.quotation_type}",
            ) from None
        rfq_ref = str(submit_input.rfq_ref or "").strip() or None
        po_ref = str(submit_input.po_ref or "").strip() or None
        if rfq_ref and po_ref:
            raise ValidationError(message_key="quotation_reference_conflict", details="rfq_ref and po_ref both set")

        if quotation_type == QuotationType.MANUAL_ENTRY:
            lines, total_amount = self._manual_entry_amounts(submit_input)
            file_ref = None
        else:
            lines = []
            total_amount = self._declared_total(submit_input)
            file_ref = self._resolve_file(submit_input)

        with self.repository.unit_of_work() as uow:
            if po_ref:
                purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, po_ref)
                if purchase_order.supplier_ref != actor.org_or_supplier_id:
                    raise Forbidden(
                        message_key="purchase_order_supplier_mismatch",
                        details=f"purchase order {po_ref} belongs to another supplier",
                    )
            quotation = Quotation(
                submission_number=self._next_number(uow, DocumentKind.QUOTATION),
                rfq_ref=rfq_ref,
                po_ref=po_ref,
                supplier_ref=actor.org_or_supplier_id,
                quotation_type=quotation_type,
                lines=lines,
                file_ref=file_ref,
                file_name=submit_input.file_name,
                total_amount=total_amount,
                currency=self.currency,
                notes=submit_input.notes,
            )
            uow.add(quotation)
            if rfq_ref:
                self.rfqs.record_quotation(uow, rfq_ref, quotation)

        self._log(
            "quotation_submitted",
            quotation_id=quotation.id,
            submission_number=quotation.submission_number,
            supplier_ref=quotation.supplier_ref,
            quotation_type=quotation_type.value,
        )
        self._publish(
            [
                QuotationSubmitted(
                    tenant_id=self.tenant_id,
                    quotation_id=quotation.id,
                    submission_number=quotation.submission_number,
                    supplier_ref=quotation.supplier_ref,
                    rfq_id=rfq_ref,
                    po_id=po_ref,
                    total_amount=money_str(quotation.total_amount),
                )
            ]
        )
        return quotation

    def review(self, actor: ActorContext, quotation_id: str) -> Quotation:
        with self.repository.unit_of_work() as uow:
            quotation = uow.require(DocumentKind.QUOTATION, quotation_id)
            self.machine.transition(quotation, QuotationStatus.UNDER_REVIEW, actor, uow)
            quotation.reviewed_by = actor.org_or_supplier_id
            quotation.reviewed_at = utc_now()
            uow.save(quotation, quotation.version)
        return quotation

    def decide(self, actor: ActorContext, quotation_id: str, decision: str) -> Quotation:
        target = DECISIONS.get(str(decision or "").strip().lower())
        if target is None:
            raise ValidationError(message_key="decision_invalid", details=f"decision={decision}")

        eligibility = None
        try:
            with self.repository.unit_of_work() as uow:
                quotation = uow.require(DocumentKind.QUOTATION, quotation_id)
                self.machine.transition(quotation, target, actor, uow)
                quotation.reviewed_by = actor.org_or_supplier_id
                quotation.reviewed_at = utc_now()
                uow.save(quotation, quotation.version)
                if target == QuotationStatus.ACCEPTED:
                    eligibility = uow.find_by_unique_key(DocumentKind.INVOICE_ELIGIBILITY, quotation.id)
                    if quotation.rfq_ref:
                        self.rfqs.close_if_open(uow, quotation.rfq_ref, actor)
        except UniqueConstraintViolation as exc:
            # Another request accepted the same quotation first.
            raise ConcurrencyConflict(details=f"quotation {quotation_id} was decided concurrently") from exc

        self._log(
            "quotation_decided",
            quotation_id=quotation.id,
            decision=target.value,
            eligibility_id=eligibility.id if eligibility else None,
        )
        self._publish(
            [
                QuotationDecided(
                    tenant_id=self.tenant_id,
                    quotation_id=quotation.id,
                    submission_number=quotation.submission_number,
                    supplier_ref=quotation.supplier_ref,
                    decision="accept" if target == QuotationStatus.ACCEPTED else "reject",
                    eligibility_id=eligibility.id if eligibility else None,
                )
            ]
        )
        return quotation

    def get(self, actor: ActorContext, quotation_id: str) -> Quotation:
        quotation = self.repository.require(DocumentKind.QUOTATION, quotation_id)
        self._require_owner(actor, quotation)
        return quotation

    def list_visible(
        self,
        actor: ActorContext,
        *,
        status: str | None = None,
        rfq_ref: str | None = None,
        po_ref: str | None = None,
    ) -> List[Quotation]:
        supplier_ref = actor.org_or_supplier_id if actor.is_supplier else None
        return self.repository.query(
            DocumentKind.QUOTATION,
            status=status,
            supplier_ref=supplier_ref,
            parent_ref=rfq_ref or po_ref,
        )

    def file_content(self, actor: ActorContext, quotation_id: str) -> bytes:
        quotation = self.get(actor, quotation_id)
        if not quotation.file_ref:
            raise ValidationError(message_key="quotation_file_required", details=f"quotation {quotation_id} has no file")
        return self.file_store.get(quotation.file_ref)

    def _manual_entry_amounts(self, submit_input: QuotationSubmitInput) -> tuple[list, Decimal]:
        lines = parse_lines(submit_input.lines)
        if not lines:
            raise ValidationError(message_key="lines_required", details="manual quotations need line items")
        for line in lines:
            if line.unit_price <= 0:
                raise ValidationError(
                    message_key="quotation_price_not_positive",
                    details=f"unit_price={line.unit_price}",
                )
        if submit_input.total_amount is not None:
            total = quantize(submit_input.total_amount)
        else:
            total = aggregate(lines).total
        if total < 0:
            raise ValidationError(message_key="total_negative", details=f"total_amount={total}")
        return lines, total

    @staticmethod
    def _declared_total(submit_input: QuotationSubmitInput) -> Decimal:
        if submit_input.total_amount is None or str(submit_input.total_amount).strip() == "":
            raise ValidationError(message_key="quotation_total_required", details="file_upload needs total_amount")
        total = quantize(submit_input.total_amount)
        if total < 0:
            raise ValidationError(message_key="total_negative", details=f"total_amount={total}")
        return total

    def _resolve_file(self, submit_input: QuotationSubmitInput) -> str:
        file_ref = str(submit_input.file_ref or "").strip()
        if file_ref:
            return file_ref
        if submit_input.file_bytes:
            return self.file_store.put(
                submit_input.file_bytes,
                tenant_id=self.tenant_id,
                module="quotations",
                file_name=submit_input.file_name,
            )
        raise ValidationError(message_key="quotation_file_required", details="file_upload needs a file")
