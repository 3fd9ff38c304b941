from __future__ import annotations

from typing import List

from erp_engine.application.workflow_base import Workflow
from erp_engine.core import GoodsReceived, PurchaseOrderSent
from erp_engine.domain.contracts import ActorContext, PurchaseOrderCreateInput
from erp_engine.domain.models import (
    ActorClass,
    DocumentKind,
    GoodsReceiptEntry,
    PurchaseOrder,
    PurchaseOrderLine,
    PurchaseOrderStatus,
    parse_date,
    parse_lines,
    utc_now,
)
from erp_engine.domain.money import money_str, to_decimal
from erp_engine.domain.totals import aggregate
from erp_engine.errors import ConcurrencyConflict, DuplicateReceipt, GuardFailed, NotFound, ValidationError
from erp_engine.procurement.flow_policy import PURCHASE_ORDER_MACHINE


_RECEIVABLE = (
    PurchaseOrderStatus.SENT,
    PurchaseOrderStatus.CONFIRMED,
    PurchaseOrderStatus.PARTIALLY_RECEIVED,
)


def _drop_draft_lines(purchase_order: PurchaseOrder, _uow) -> None:
    purchase_order.lines = []


def _apply_totals(purchase_order: PurchaseOrder) -> None:
    # Purchase orders discount per line only; there is no document level discount.
    totals = aggregate(purchase_order.lines)
    purchase_order.subtotal = totals.subtotal
    purchase_order.total_discount = totals.total_discount
    purchase_order.total_tax = totals.total_tax
    purchase_order.total_amount = totals.total


class PurchaseOrderWorkflow(Workflow):
    machine = PURCHASE_ORDER_MACHINE.with_side_effects(
        {(PurchaseOrderStatus.DRAFT, PurchaseOrderStatus.CANCELLED): _drop_draft_lines}
    )

    def create(self, actor: ActorContext, create_input: PurchaseOrderCreateInput) -> PurchaseOrder:
        self._require_actor(actor, ActorClass.BUYER)
        supplier_ref = str(create_input.supplier_ref or "").strip()
        warehouse_ref = str(create_input.warehouse_ref or "").strip()
        if not supplier_ref or not warehouse_ref:
            raise ValidationError(details="supplier_ref and warehouse_ref are required")
        lines = parse_lines(create_input.lines, PurchaseOrderLine)
        if not lines:
            raise ValidationError(message_key="lines_required", details="a purchase order needs at least one line")

        po_date = parse_date(create_input.po_date) or utc_now().date()
        expected_delivery_date = parse_date(create_input.expected_delivery_date)
        if expected_delivery_date is not None and expected_delivery_date < po_date:
            raise ValidationError(details="expected_delivery_date is before po_date")

        with self.repository.unit_of_work() as uow:
            purchase_order = PurchaseOrder(
                po_number=self._next_number(uow, DocumentKind.PURCHASE_ORDER),
                supplier_ref=supplier_ref,
                warehouse_ref=warehouse_ref,
                po_date=po_date,
                expected_delivery_date=expected_delivery_date,
                notes=create_input.notes,
                currency=self.currency,
                lines=lines,
                created_by=actor.org_or_supplier_id,
            )
            _apply_totals(purchase_order)
            uow.add(purchase_order)
        self._log(
            "purchase_order_created",
            purchase_order_id=purchase_order.id,
            po_number=purchase_order.po_number,
            total_amount=money_str(purchase_order.total_amount),
        )
        return purchase_order

    def update_draft(
        self,
        actor: ActorContext,
        purchase_order_id: str,
        *,
        lines: list | None = None,
        warehouse_ref: str | None = None,
        expected_delivery_date=None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> PurchaseOrder:
        self._require_actor(actor, ActorClass.BUYER)
        with self.repository.unit_of_work() as uow:
            purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
            if expected_version is not None and int(expected_version) != purchase_order.version:
                raise ConcurrencyConflict(details=f"purchase order {purchase_order_id} is at v{purchase_order.version}")
            if purchase_order.status != PurchaseOrderStatus.DRAFT:
                raise GuardFailed(
                    message_key="document_not_draft",
                    details=f"purchase order {purchase_order_id} is {purchase_order.status.value}",
                )
            if lines is not None:
                parsed = parse_lines(lines, PurchaseOrderLine)
                if not parsed:
                    raise ValidationError(message_key="lines_required", details="a purchase order needs at least one line")
                purchase_order.lines = parsed
                _apply_totals(purchase_order)
            if warehouse_ref is not None and str(warehouse_ref).strip():
                purchase_order.warehouse_ref = str(warehouse_ref).strip()
            if expected_delivery_date is not None:
                purchase_order.expected_delivery_date = parse_date(expected_delivery_date)
            if notes is not None:
                purchase_order.notes = notes
            uow.save(purchase_order, purchase_order.version)
        return purchase_order

    def send(self, actor: ActorContext, purchase_order_id: str) -> PurchaseOrder:
        with self.repository.unit_of_work() as uow:
            purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
            self.machine.transition(purchase_order, PurchaseOrderStatus.SENT, actor, uow)
            uow.save(purchase_order, purchase_order.version)
        delivery = purchase_order.expected_delivery_date
        self._publish(
            [
                PurchaseOrderSent(
                    tenant_id=self.tenant_id,
                    purchase_order_id=purchase_order.id,
                    po_number=purchase_order.po_number,
                    supplier_ref=purchase_order.supplier_ref,
                    total_amount=money_str(purchase_order.total_amount),
                    currency=purchase_order.currency,
                    expected_delivery_date=delivery.isoformat() if delivery else None,
                )
            ]
        )
        return purchase_order

    def confirm(self, actor: ActorContext, purchase_order_id: str) -> PurchaseOrder:
        with self.repository.unit_of_work() as uow:
            purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
            self._require_owner(actor, purchase_order)
            self.machine.transition(purchase_order, PurchaseOrderStatus.CONFIRMED, actor, uow)
            uow.save(purchase_order, purchase_order.version)
        return purchase_order

    def cancel(self, actor: ActorContext, purchase_order_id: str) -> PurchaseOrder:
        with self.repository.unit_of_work() as uow:
            purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
            self.machine.transition(purchase_order, PurchaseOrderStatus.CANCELLED, actor, uow)
            uow.save(purchase_order, purchase_order.version)
        return purchase_order

    def record_receipt(
        self,
        actor: ActorContext,
        purchase_order_id: str,
        line_id: str,
        quantity_received,
        idempotency_token: str,
    ) -> PurchaseOrder:
        """Apply one goods receipt to a line and recompute the order status.

        ``idempotency_token`` identifies the physical receipt; replaying a token
        raises ``DuplicateReceipt`` and leaves the quantities untouched.
        """
        self._require_actor(actor, ActorClass.BUYER)
        token = str(idempotency_token or "").strip()
        if not token:
            raise ValidationError(message_key="idempotency_token_required", details="idempotency_token is required")
        quantity = to_decimal(quantity_received, field="quantity_received")
        if quantity <= 0:
            raise GuardFailed(message_key="receipt_quantity_not_positive", details=f"quantity_received={quantity}")

        with self.repository.unit_of_work() as uow:
            purchase_order = uow.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
            if purchase_order.has_receipt_token(token):
                raise DuplicateReceipt(
                    details=f"receipt {token} already applied to {purchase_order.po_number}",
                    payload={"idempotency_token": token},
                )
            if purchase_order.status not in _RECEIVABLE:
                raise GuardFailed(
                    message_key="purchase_order_not_receivable",
                    details=f"purchase order {purchase_order_id} is {purchase_order.status.value}",
                )
            line = purchase_order.line(line_id)
            if line is None:
                raise NotFound(message_key="line_not_found", details=f"line {line_id} not on {purchase_order.po_number}")
            if line.quantity_received + quantity > line.quantity:
                raise GuardFailed(
                    message_key="receipt_exceeds_ordered",
                    details=f"line {line_id}: {quantity} exceeds remaining {line.remaining}",
                    payload={"remaining": str(line.remaining)},
                )

            line.quantity_received += quantity
            purchase_order.goods_receipts.append(
                GoodsReceiptEntry(
                    idempotency_token=token,
                    line_id=line.line_id,
                    quantity=quantity,
                    received_by=actor.org_or_supplier_id,
                )
            )
            if purchase_order.all_lines_received:
                self.machine.transition(purchase_order, PurchaseOrderStatus.RECEIVED, actor, uow)
            elif purchase_order.status != PurchaseOrderStatus.PARTIALLY_RECEIVED:
                self.machine.transition(purchase_order, PurchaseOrderStatus.PARTIALLY_RECEIVED, actor, uow)
            uow.save(purchase_order, purchase_order.version)

        self._log(
            "goods_received",
            purchase_order_id=purchase_order.id,
            line_id=line.line_id,
            quantity=str(quantity),
            status=purchase_order.status.value,
        )
        self._publish(
            [
                GoodsReceived(
                    tenant_id=self.tenant_id,
                    purchase_order_id=purchase_order.id,
                    po_number=purchase_order.po_number,
                    supplier_ref=purchase_order.supplier_ref,
                    line_id=line.line_id,
                    quantity=str(quantity),
                    status=purchase_order.status.value,
                )
            ]
        )
        return purchase_order

    def get(self, actor: ActorContext, purchase_order_id: str) -> PurchaseOrder:
        purchase_order = self.repository.require(DocumentKind.PURCHASE_ORDER, purchase_order_id)
        self._require_owner(actor, purchase_order)
        if actor.is_supplier and purchase_order.status == PurchaseOrderStatus.DRAFT:
            raise NotFound(details=f"purchase_order {purchase_order_id} not found")
        return purchase_order

    def list_visible(self, actor: ActorContext, status: str | None = None) -> List[PurchaseOrder]:
        if actor.is_supplier:
            orders = self.repository.query(
                DocumentKind.PURCHASE_ORDER,
                status=status,
                supplier_ref=actor.org_or_supplier_id,
            )
            return [order for order in orders if order.status != PurchaseOrderStatus.DRAFT]
        return self.repository.query(DocumentKind.PURCHASE_ORDER, status=status)
