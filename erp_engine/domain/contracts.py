from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from erp_engine.domain.models import ActorClass
from erp_engine.errors import Forbidden


_CALLER_CLASSES = (ActorClass.BUYER, ActorClass.SUPPLIER)


@dataclass(frozen=True)
class ActorContext:
    """Resolved caller identity; credentials never reach the engine."""

    actor_class: ActorClass
    org_or_supplier_id: str
    tenant_id: str = ""

    @classmethod
    def resolve(cls, actor_class: str | None, actor_id: str | None, tenant_id: str | None = None) -> "ActorContext":
        normalized_class = str(actor_class or "").strip().lower()
        normalized_id = str(actor_id or "").strip()
        if not normalized_class or not normalized_id:
            raise Forbidden(message_key="actor_required", details="missing actor class or id")
        try:
            resolved = ActorClass(normalized_class)
        except ValueError:
            raise Forbidden(message_key="actor_required", details=f"unknown actor class: {normalized_class}") from None
        # The system actor only exists inside the engine (see SYSTEM_ACTOR).
        if resolved not in _CALLER_CLASSES:
            raise Forbidden(message_key="actor_required", details=f"actor class not allowed: {normalized_class}")
        return cls(actor_class=resolved, org_or_supplier_id=normalized_id, tenant_id=str(tenant_id or "").strip())

    @property
    def is_buyer(self) -> bool:
        return self.actor_class == ActorClass.BUYER

    @property
    def is_supplier(self) -> bool:
        return self.actor_class == ActorClass.SUPPLIER


SYSTEM_ACTOR = ActorContext(actor_class=ActorClass.SYSTEM, org_or_supplier_id="system")


@dataclass(frozen=True)
class RfqCreateInput:
    title: str
    lines: List[Dict[str, Any]]
    supplier_refs: List[str]
    deadline_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class QuotationSubmitInput:
    quotation_type: str
    rfq_ref: str | None = None
    po_ref: str | None = None
    lines: List[Dict[str, Any]] = field(default_factory=list)
    file_ref: str | None = None
    file_name: str | None = None
    file_bytes: bytes | None = None
    total_amount: Decimal | str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class PurchaseOrderCreateInput:
    supplier_ref: str
    warehouse_ref: str
    lines: List[Dict[str, Any]]
    po_date: date | None = None
    expected_delivery_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DeclaredTotals:
    subtotal: Decimal | str
    tax_amount: Decimal | str = "0"


@dataclass(frozen=True)
class InvoiceCreateInput:
    due_date: date | str
    lines: List[Dict[str, Any]] = field(default_factory=list)
    declared_totals: DeclaredTotals | None = None
    po_ref: str | None = None
    invoice_date: date | str | None = None
    shipping_charges: Decimal | str = "0"
    discount_amount: Decimal | str = "0"
    file_ref: str | None = None
    notes: str | None = None
