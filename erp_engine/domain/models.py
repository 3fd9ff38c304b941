from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional

from erp_engine.domain.money import ZERO, LineAmounts, compute_line, money_str, quantize, validate_line_inputs
from erp_engine.errors import ValidationError


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActorClass(str, Enum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    SYSTEM = "system"


class DocumentKind(str, Enum):
    RFQ = "rfq"
    QUOTATION = "quotation"
    PURCHASE_ORDER = "purchase_order"
    INVOICE = "invoice"
    INVOICE_ELIGIBILITY = "invoice_eligibility"
    RECEIPT = "receipt"


class RfqStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    IN_PROGRESS = "in_progress"
    RECEIVED = "received"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class QuotationStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PurchaseOrderStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    CONFIRMED = "confirmed"
    PARTIALLY_RECEIVED = "partially_received"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    QUOTED = "quoted"
    DECLINED = "declined"


class QuotationType(str, Enum):
    FILE_UPLOAD = "file_upload"
    MANUAL_ENTRY = "manual_entry"


# -- value coercion ---------------------------------------------------------


def _decimal(value: Any) -> Decimal:
    return quantize(value) if value is not None else ZERO


def _raw_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(message_key="validation_error", details=f"invalid date: {value}") from None


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        resolved = value
    else:
        raw = str(value).strip()
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            resolved = datetime.fromisoformat(normalized)
        except ValueError:
            raise ValidationError(message_key="validation_error", details=f"invalid datetime: {value}") from None
    if resolved.tzinfo is None:
        return resolved.replace(tzinfo=timezone.utc)
    return resolved.astimezone(timezone.utc)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    return value


class Record:
    """Dict round-tripping shared by documents and their nested values."""

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {}

    def to_dict(self) -> Dict[str, Any]:
        return {item.name: _encode(getattr(self, item.name)) for item in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {item.name for item in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in dict(data or {}).items():
            if key not in known:
                continue
            decoder = cls._decoders.get(key)
            kwargs[key] = decoder(value) if decoder is not None and value is not None else value
        return cls(**kwargs)


def _list_of(record_type) -> Callable[[Any], list]:
    return lambda items: [record_type.from_dict(item) for item in (items or [])]


# -- line items -------------------------------------------------------------


def _pick(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


@dataclass(kw_only=True)
class LineItem(Record):
    line_id: str = field(default_factory=new_id)
    product_ref: Optional[str] = None
    description: str = ""
    quantity: Decimal
    unit_price: Decimal
    tax_rate_pct: Decimal = ZERO
    discount_pct: Decimal = ZERO

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "quantity": _raw_decimal,
        "unit_price": _raw_decimal,
        "tax_rate_pct": _raw_decimal,
        "discount_pct": _raw_decimal,
    }

    def amounts(self) -> LineAmounts:
        return compute_line(self.quantity, self.unit_price, self.discount_pct, self.tax_rate_pct)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["amounts"] = self.amounts().as_dict()
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LineItem":
        """Build a validated line from caller input; accepts snake_case and camelCase keys."""
        if not isinstance(payload, dict):
            raise ValidationError(message_key="validation_error", details="line item must be an object")
        qty, price, discount, tax = validate_line_inputs(
            _pick(payload, "quantity"),
            _pick(payload, "unit_price", "unitPrice"),
            _pick(payload, "discount_pct", "discountPct", default=0),
            _pick(payload, "tax_rate_pct", "taxRatePct", default=0),
        )
        kwargs: Dict[str, Any] = {}
        line_id = _pick(payload, "line_id", "lineId")
        if line_id:
            kwargs["line_id"] = str(line_id)
        product_ref = _pick(payload, "product_ref", "productRef")
        return cls(
            product_ref=str(product_ref) if product_ref is not None else None,
            description=str(_pick(payload, "description", default="") or ""),
            quantity=qty,
            unit_price=price,
            tax_rate_pct=tax,
            discount_pct=discount,
            **kwargs,
        )


@dataclass(kw_only=True)
class PurchaseOrderLine(LineItem):
    quantity_received: Decimal = ZERO

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        **LineItem._decoders,
        "quantity_received": _raw_decimal,
    }

    @property
    def remaining(self) -> Decimal:
        return self.quantity - self.quantity_received

    @property
    def fully_received(self) -> bool:
        return self.quantity_received >= self.quantity


def parse_lines(raw_lines: Any, line_type=LineItem) -> List[LineItem]:
    if raw_lines is None:
        return []
    if not isinstance(raw_lines, (list, tuple)):
        raise ValidationError(message_key="validation_error", details="lines must be a list")
    return [line if isinstance(line, line_type) else line_type.from_payload(line) for line in raw_lines]


# -- nested values ----------------------------------------------------------


@dataclass(kw_only=True)
class SupplierInvitation(Record):
    supplier_ref: str
    status: InvitationStatus = InvitationStatus.PENDING
    responded_at: Optional[datetime] = None
    response_notes: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "status": InvitationStatus,
        "responded_at": parse_datetime,
    }


@dataclass(kw_only=True)
class GoodsReceiptEntry(Record):
    idempotency_token: str
    line_id: str
    quantity: Decimal
    received_at: datetime = field(default_factory=utc_now)
    received_by: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "quantity": _raw_decimal,
        "received_at": parse_datetime,
    }


@dataclass(kw_only=True)
class PaymentEntry(Record):
    amount: Decimal
    paid_at: datetime = field(default_factory=utc_now)
    method: Optional[str] = None
    reference: Optional[str] = None
    recorded_by: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "amount": _decimal,
        "paid_at": parse_datetime,
    }


# -- documents --------------------------------------------------------------


@dataclass(kw_only=True)
class Document(Record):
    kind: ClassVar[DocumentKind]

    id: str = field(default_factory=new_id)
    version: int = 0

    @property
    def number(self) -> Optional[str]:
        return None

    @property
    def owner_ref(self) -> Optional[str]:
        return getattr(self, "supplier_ref", None)

    @property
    def parent_ref(self) -> Optional[str]:
        return None

    @property
    def unique_key(self) -> Optional[str]:
        return None

    @property
    def status_value(self) -> Optional[str]:
        status = getattr(self, "status", None)
        return status.value if isinstance(status, Enum) else status


@dataclass(kw_only=True)
class Rfq(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.RFQ

    rfq_number: str = ""
    title: str = ""
    created_date: date = field(default_factory=lambda: utc_now().date())
    deadline_date: Optional[date] = None
    status: RfqStatus = RfqStatus.DRAFT
    notes: Optional[str] = None
    lines: List[LineItem] = field(default_factory=list)
    invitations: List[SupplierInvitation] = field(default_factory=list)
    quotation_refs: List[str] = field(default_factory=list)
    created_by: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "created_date": parse_date,
        "deadline_date": parse_date,
        "status": RfqStatus,
        "lines": _list_of(LineItem),
        "invitations": _list_of(SupplierInvitation),
    }

    @property
    def number(self) -> Optional[str]:
        return self.rfq_number

    @property
    def supplier_refs(self) -> List[str]:
        return [invitation.supplier_ref for invitation in self.invitations]

    def invitation_for(self, supplier_ref: str) -> Optional[SupplierInvitation]:
        for invitation in self.invitations:
            if invitation.supplier_ref == supplier_ref:
                return invitation
        return None


@dataclass(kw_only=True)
class Quotation(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.QUOTATION

    submission_number: str = ""
    rfq_ref: Optional[str] = None
    po_ref: Optional[str] = None
    supplier_ref: str
    quotation_type: QuotationType
    lines: List[LineItem] = field(default_factory=list)
    file_ref: Optional[str] = None
    file_name: Optional[str] = None
    total_amount: Decimal = ZERO
    currency: str = "INR"
    status: QuotationStatus = QuotationStatus.SUBMITTED
    notes: Optional[str] = None
    submitted_at: datetime = field(default_factory=utc_now)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "quotation_type": QuotationType,
        "lines": _list_of(LineItem),
        "total_amount": _decimal,
        "status": QuotationStatus,
        "submitted_at": parse_datetime,
        "reviewed_at": parse_datetime,
    }

    @property
    def number(self) -> Optional[str]:
        return self.submission_number

    @property
    def parent_ref(self) -> Optional[str]:
        return self.rfq_ref or self.po_ref


@dataclass(kw_only=True)
class PurchaseOrder(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.PURCHASE_ORDER

    po_number: str = ""
    supplier_ref: str
    warehouse_ref: str
    po_date: date = field(default_factory=lambda: utc_now().date())
    expected_delivery_date: Optional[date] = None
    status: PurchaseOrderStatus = PurchaseOrderStatus.DRAFT
    notes: Optional[str] = None
    currency: str = "INR"
    lines: List[PurchaseOrderLine] = field(default_factory=list)
    goods_receipts: List[GoodsReceiptEntry] = field(default_factory=list)
    subtotal: Decimal = ZERO
    total_discount: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_amount: Decimal = ZERO
    created_by: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "po_date": parse_date,
        "expected_delivery_date": parse_date,
        "status": PurchaseOrderStatus,
        "lines": _list_of(PurchaseOrderLine),
        "goods_receipts": _list_of(GoodsReceiptEntry),
        "subtotal": _decimal,
        "total_discount": _decimal,
        "total_tax": _decimal,
        "total_amount": _decimal,
    }

    @property
    def number(self) -> Optional[str]:
        return self.po_number

    def line(self, line_id: str) -> Optional[PurchaseOrderLine]:
        for line in self.lines:
            if line.line_id == line_id:
                return line
        return None

    def has_receipt_token(self, token: str) -> bool:
        return any(entry.idempotency_token == token for entry in self.goods_receipts)

    @property
    def all_lines_received(self) -> bool:
        return bool(self.lines) and all(line.fully_received for line in self.lines)

    @property
    def any_line_received(self) -> bool:
        return any(line.quantity_received > 0 for line in self.lines)


@dataclass(kw_only=True)
class VendorInvoice(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.INVOICE

    invoice_number: str = ""
    supplier_ref: str
    po_ref: Optional[str] = None
    quotation_ref: Optional[str] = None
    invoice_date: date = field(default_factory=lambda: utc_now().date())
    due_date: date
    currency: str = "INR"
    lines: List[LineItem] = field(default_factory=list)
    shipping_charges: Decimal = ZERO
    discount_amount: Decimal = ZERO
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    amount_paid: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.DRAFT
    payments: List[PaymentEntry] = field(default_factory=list)
    file_ref: Optional[str] = None
    notes: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "invoice_date": parse_date,
        "due_date": parse_date,
        "lines": _list_of(LineItem),
        "shipping_charges": _decimal,
        "discount_amount": _decimal,
        "subtotal": _decimal,
        "tax_amount": _decimal,
        "total_amount": _decimal,
        "amount_paid": _decimal,
        "status": InvoiceStatus,
        "payments": _list_of(PaymentEntry),
    }

    @property
    def number(self) -> Optional[str]:
        return self.invoice_number

    @property
    def parent_ref(self) -> Optional[str]:
        return self.po_ref or self.quotation_ref

    @property
    def unique_key(self) -> Optional[str]:
        # At most one invoice generated per accepted quotation.
        return self.quotation_ref

    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.amount_paid

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["balance_due"] = money_str(self.balance_due)
        return payload


@dataclass(kw_only=True)
class InvoiceEligibility(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.INVOICE_ELIGIBILITY

    quotation_ref: str
    supplier_ref: str
    amount: Decimal = ZERO
    created_at: datetime = field(default_factory=utc_now)
    invoice_ref: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "amount": _decimal,
        "created_at": parse_datetime,
    }

    @property
    def parent_ref(self) -> Optional[str]:
        return self.quotation_ref

    @property
    def unique_key(self) -> Optional[str]:
        return self.quotation_ref


@dataclass(kw_only=True)
class Receipt(Document):
    kind: ClassVar[DocumentKind] = DocumentKind.RECEIPT

    receipt_number: str = ""
    invoice_ref: str
    supplier_ref: str
    amount: Decimal = ZERO
    currency: str = "INR"
    payment_method: str = "bank_transfer"
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    generated_at: datetime = field(default_factory=utc_now)
    generated_by: Optional[str] = None

    _decoders: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "amount": _decimal,
        "generated_at": parse_datetime,
    }

    @property
    def number(self) -> Optional[str]:
        return self.receipt_number

    @property
    def parent_ref(self) -> Optional[str]:
        return self.invoice_ref

    @property
    def unique_key(self) -> Optional[str]:
        return self.invoice_ref


DOCUMENT_TYPES: Dict[DocumentKind, type] = {
    DocumentKind.RFQ: Rfq,
    DocumentKind.QUOTATION: Quotation,
    DocumentKind.PURCHASE_ORDER: PurchaseOrder,
    DocumentKind.INVOICE: VendorInvoice,
    DocumentKind.INVOICE_ELIGIBILITY: InvoiceEligibility,
    DocumentKind.RECEIPT: Receipt,
}


def document_from_dict(kind: DocumentKind | str, data: Dict[str, Any], *, version: int | None = None) -> Document:
    document_type = DOCUMENT_TYPES[DocumentKind(kind)]
    document = document_type.from_dict(data)
    if version is not None:
        document.version = int(version)
    return document
