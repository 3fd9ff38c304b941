"""Plain-text message bodies for outbound notifications.

Every function is pure: it takes already-formatted values and returns
``{"subject": ..., "body": ...}``. Delivery belongs to the ``Notifier``.
"""

from __future__ import annotations

from typing import Dict


RFQ_INVITATION = "rfq_invitation"
PURCHASE_ORDER = "purchase_order"
QUOTATION_DECISION = "quotation_decision"
INVOICE_SUBMITTED = "invoice_submitted"
PAYMENT_RECORDED = "payment_recorded"
RECEIPT_GENERATED = "receipt_generated"

TEMPLATE_KINDS = (
    RFQ_INVITATION,
    PURCHASE_ORDER,
    QUOTATION_DECISION,
    INVOICE_SUBMITTED,
    PAYMENT_RECORDED,
    RECEIPT_GENERATED,
)


def _lines(*parts: str | None) -> str:
    return "\n".join(part for part in parts if part is not None)


def _money(currency: str, amount: str) -> str:
    return f"{currency} {amount}"


def rfq_invitation(
    *,
    organization_name: str,
    rfq_number: str,
    title: str,
    deadline_date: str | None = None,
) -> Dict[str, str]:
    return {
        "subject": f"Request for Quotation {rfq_number} from {organization_name}",
        "body": _lines(
            "Dear Supplier,",
            "",
            f"{organization_name} invites you to quote for RFQ #{rfq_number}: {title}.",
            f"Please submit your quotation before {deadline_date}." if deadline_date else None,
            "You can respond through the supplier portal.",
        ),
    }


def purchase_order(
    *,
    organization_name: str,
    po_number: str,
    total_amount: str,
    currency: str,
    expected_delivery_date: str | None = None,
) -> Dict[str, str]:
    return {
        "subject": f"Purchase Order {po_number} from {organization_name}",
        "body": _lines(
            "Dear Supplier,",
            "",
            f"Please find purchase order {po_number} for {_money(currency, total_amount)}.",
            f"Expected delivery date: {expected_delivery_date}." if expected_delivery_date else None,
            "Please confirm the order through the supplier portal.",
        ),
    }


def quotation_decision(*, organization_name: str, submission_number: str, decision: str) -> Dict[str, str]:
    verb = "accepted" if decision == "accept" else "rejected"
    return {
        "subject": f"Quotation {submission_number} {verb} by {organization_name}",
        "body": _lines(
            "Dear Supplier,",
            "",
            f"Your quotation {submission_number} has been {verb}.",
            "An invoice can now be raised against it." if verb == "accepted" else None,
        ),
    }


def invoice_submitted(
    *,
    invoice_number: str,
    supplier_ref: str,
    total_amount: str,
    currency: str,
    due_date: str | None = None,
) -> Dict[str, str]:
    return {
        "subject": f"Invoice {invoice_number} received from {supplier_ref}",
        "body": _lines(
            f"Supplier {supplier_ref} submitted invoice {invoice_number} for {_money(currency, total_amount)}.",
            f"Due date: {due_date}." if due_date else None,
        ),
    }


def payment_recorded(
    *,
    organization_name: str,
    invoice_number: str,
    amount: str,
    amount_paid: str,
    currency: str,
) -> Dict[str, str]:
    return {
        "subject": f"Payment recorded for invoice {invoice_number}",
        "body": _lines(
            "Dear Supplier,",
            "",
            f"{organization_name} recorded a payment of {_money(currency, amount)} on invoice {invoice_number}.",
            f"Total paid so far: {_money(currency, amount_paid)}.",
        ),
    }


def receipt_generated(
    *,
    organization_name: str,
    receipt_number: str,
    invoice_number: str,
    amount: str,
    currency: str,
    payment_method: str,
) -> Dict[str, str]:
    return {
        "subject": f"Payment receipt {receipt_number} for invoice {invoice_number}",
        "body": _lines(
            "Dear Supplier,",
            "",
            f"{organization_name} issued receipt {receipt_number} for {_money(currency, amount)}",
            f"paid by {payment_method.replace('_', ' ')} against invoice {invoice_number}.",
        ),
    }
