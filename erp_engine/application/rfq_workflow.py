from __future__ import annotations

from typing import Iterable, List

from erp_engine.application.workflow_base import Workflow
from erp_engine.core import RfqSent
from erp_engine.domain.contracts import SYSTEM_ACTOR, ActorContext, RfqCreateInput
from erp_engine.domain.models import (
    ActorClass,
    DocumentKind,
    InvitationStatus,
    Quotation,
    Rfq,
    RfqStatus,
    SupplierInvitation,
    parse_date,
    parse_lines,
    utc_now,
)
from erp_engine.errors import ConcurrencyConflict, Forbidden, GuardFailed, ValidationError
from erp_engine.infrastructure.repositories.base import UnitOfWork
from erp_engine.procurement.flow_policy import RFQ_MACHINE


_OPEN_FOR_QUOTATIONS = (RfqStatus.SENT, RfqStatus.IN_PROGRESS)


def _drop_draft_lines(rfq: Rfq, _uow) -> None:
    rfq.lines = []


def _normalize_supplier_refs(supplier_refs: Iterable[str] | None) -> List[str]:
    normalized: List[str] = []
    for ref in supplier_refs or []:
        value = str(ref or "").strip()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


class RfqWorkflow(Workflow):
    machine = RFQ_MACHINE.with_side_effects({(RfqStatus.DRAFT, RfqStatus.CANCELLED): _drop_draft_lines})

    def create(self, actor: ActorContext, create_input: RfqCreateInput) -> Rfq:
        self._require_actor(actor, ActorClass.BUYER)
        lines = parse_lines(create_input.lines)
        if not lines:
            raise ValidationError(message_key="lines_required", details="an RFQ needs at least one line")
        title = str(create_input.title or "").strip()
        if not title:
            raise ValidationError(details="title is required")

        with self.repository.unit_of_work() as uow:
            rfq = Rfq(
                rfq_number=self._next_number(uow, DocumentKind.RFQ),
                title=title,
                deadline_date=parse_date(create_input.deadline_date),
                notes=create_input.notes,
                lines=lines,
                invitations=[
                    SupplierInvitation(supplier_ref=ref) for ref in _normalize_supplier_refs(create_input.supplier_refs)
                ],
                created_by=actor.org_or_supplier_id,
            )
            uow.add(rfq)
        self._log("rfq_created", rfq_id=rfq.id, rfq_number=rfq.rfq_number, line_count=len(rfq.lines))
        return rfq

    def update_draft(
        self,
        actor: ActorContext,
        rfq_id: str,
        *,
        title: str | None = None,
        lines: list | None = None,
        supplier_refs: Iterable[str] | None = None,
        deadline_date=None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> Rfq:
        self._require_actor(actor, ActorClass.BUYER)
        with self.repository.unit_of_work() as uow:
            rfq = uow.require(DocumentKind.RFQ, rfq_id)
            if expected_version is not None and int(expected_version) != rfq.version:
                raise ConcurrencyConflict(details=f"rfq {rfq_id} is at v{rfq.version}")
            if rfq.status != RfqStatus.DRAFT:
                raise GuardFailed(message_key="document_not_draft", details=f"rfq {rfq_id} is {rfq.status.value}")
            if title is not None:
                if not str(title).strip():
                    raise ValidationError(details="title is required")
                rfq.title = str(title).strip()
            if lines is not None:
                parsed = parse_lines(lines)
                if not parsed:
                    raise ValidationError(message_key="lines_required", details="an RFQ needs at least one line")
                rfq.lines = parsed
            if supplier_refs is not None:
                rfq.invitations = [SupplierInvitation(supplier_ref=ref) for ref in _normalize_supplier_refs(supplier_refs)]
            if deadline_date is not None:
                rfq.deadline_date = parse_date(deadline_date)
            if notes is not None:
                rfq.notes = notes
            uow.save(rfq, rfq.version)
        return rfq

    def send(self, actor: ActorContext, rfq_id: str) -> Rfq:
        with self.repository.unit_of_work() as uow:
            rfq = uow.require(DocumentKind.RFQ, rfq_id)
            self.machine.transition(rfq, RfqStatus.SENT, actor, uow)
            uow.save(rfq, rfq.version)
        self._publish(
            [
                RfqSent(
                    tenant_id=self.tenant_id,
                    rfq_id=rfq.id,
                    rfq_number=rfq.rfq_number,
                    title=rfq.title,
                    supplier_refs=tuple(rfq.supplier_refs),
                    deadline_date=rfq.deadline_date.isoformat() if rfq.deadline_date else None,
                )
            ]
        )
        return rfq

    def record_quotation(self, uow: UnitOfWork, rfq_id: str, quotation: Quotation) -> Rfq:
        """Register ``quotation`` against its RFQ inside the caller's unit of work."""
        rfq = uow.require(DocumentKind.RFQ, rfq_id)
        invitation = self._open_invitation(rfq, quotation.supplier_ref)
        invitation.status = InvitationStatus.QUOTED
        invitation.responded_at = utc_now()
        rfq.quotation_refs.append(quotation.id)
        if rfq.status == RfqStatus.SENT:
            self.machine.transition(rfq, RfqStatus.IN_PROGRESS, SYSTEM_ACTOR, uow)
        self._advance_when_complete(rfq, uow)
        uow.save(rfq, rfq.version)
        return rfq

    def decline_invitation(self, actor: ActorContext, rfq_id: str, notes: str | None = None) -> Rfq:
        self._require_actor(actor, ActorClass.SUPPLIER)
        with self.repository.unit_of_work() as uow:
            rfq = uow.require(DocumentKind.RFQ, rfq_id)
            invitation = self._open_invitation(rfq, actor.org_or_supplier_id)
            invitation.status = InvitationStatus.DECLINED
            invitation.responded_at = utc_now()
            invitation.response_notes = notes
            self._advance_when_complete(rfq, uow)
            uow.save(rfq, rfq.version)
        self._log("rfq_invitation_declined", rfq_id=rfq.id, supplier_ref=actor.org_or_supplier_id)
        return rfq

    def close(self, actor: ActorContext, rfq_id: str) -> Rfq:
        with self.repository.unit_of_work() as uow:
            rfq = uow.require(DocumentKind.RFQ, rfq_id)
            self.machine.transition(rfq, RfqStatus.CLOSED, actor, uow)
            uow.save(rfq, rfq.version)
        return rfq

    def close_if_open(self, uow: UnitOfWork, rfq_id: str, actor: ActorContext) -> Rfq | None:
        """Close the RFQ after one of its quotations was accepted, when still possible."""
        rfq = uow.get(DocumentKind.RFQ, rfq_id)
        if rfq is None or not self.machine.can_transition(rfq, RfqStatus.CLOSED, actor):
            return rfq
        self.machine.transition(rfq, RfqStatus.CLOSED, actor, uow)
        uow.save(rfq, rfq.version)
        return rfq

    def cancel(self, actor: ActorContext, rfq_id: str) -> Rfq:
        with self.repository.unit_of_work() as uow:
            rfq = uow.require(DocumentKind.RFQ, rfq_id)
            self.machine.transition(rfq, RfqStatus.CANCELLED, actor, uow)
            uow.save(rfq, rfq.version)
        return rfq

    def get(self, actor: ActorContext, rfq_id: str) -> Rfq:
        rfq = self.repository.require(DocumentKind.RFQ, rfq_id)
        if actor.is_supplier and rfq.invitation_for(actor.org_or_supplier_id) is None:
            raise Forbidden(message_key="supplier_not_invited", details=f"rfq {rfq_id}")
        return rfq

    def list_visible(self, actor: ActorContext, status: str | None = None) -> List[Rfq]:
        rfqs = self.repository.query(DocumentKind.RFQ, status=status)
        if actor.is_supplier:
            # Suppliers never see drafts, even when already listed on one.
            return [
                rfq
                for rfq in rfqs
                if rfq.status != RfqStatus.DRAFT and rfq.invitation_for(actor.org_or_supplier_id) is not None
            ]
        return rfqs

    @staticmethod
    def _open_invitation(rfq: Rfq, supplier_ref: str) -> SupplierInvitation:
        if rfq.status not in _OPEN_FOR_QUOTATIONS:
            raise GuardFailed(
                message_key="rfq_not_accepting_quotations",
                details=f"rfq {rfq.id} is {rfq.status.value}",
            )
        invitation = rfq.invitation_for(supplier_ref)
        if invitation is None:
            raise Forbidden(message_key="supplier_not_invited", details=f"{supplier_ref} not invited to rfq {rfq.id}")
        if invitation.status != InvitationStatus.PENDING:
            raise GuardFailed(
                message_key="supplier_already_responded",
                details=f"{supplier_ref} already {invitation.status.value} rfq {rfq.id}",
            )
        return invitation

    def _advance_when_complete(self, rfq: Rfq, uow: UnitOfWork) -> None:
        if self.machine.can_transition(rfq, RfqStatus.RECEIVED, SYSTEM_ACTOR):
            self.machine.transition(rfq, RfqStatus.RECEIVED, SYSTEM_ACTOR, uow)
