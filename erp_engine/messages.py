from __future__ import annotations

from typing import Dict


ERROR_MESSAGES: Dict[str, str] = {
    "unexpected_error": "The operation could not be completed.",
    "validation_error": "The submitted data is invalid.",
    "quantity_not_positive": "Quantity must be greater than zero.",
    "unit_price_negative": "Unit price cannot be negative.",
    "discount_out_of_range": "Discount must be between 0 and 100 percent.",
    "tax_rate_negative": "Tax rate cannot be negative.",
    "amount_invalid": "Amount must be a decimal number.",
    "lines_required": "At least one line item is required.",
    "total_negative": "Document total cannot be negative.",
    "suppliers_required": "At least one supplier must be invited.",
    "quotation_reference_conflict": "A quotation can reference an RFQ or a purchase order, not both.",
    "quotation_type_invalid": "Quotation type must be file_upload or manual_entry.",
    "quotation_file_required": "A file reference is required for uploaded quotations.",
    "quotation_total_required": "A total amount is required for uploaded quotations.",
    "quotation_price_not_positive": "Quoted unit prices must be greater than zero.",
    "decision_invalid": "Decision must be accept or reject.",
    "idempotency_token_required": "An idempotency token is required for goods receipts.",
    "due_date_before_invoice_date": "Due date cannot be before the invoice date.",
    "payment_amount_not_positive": "Payment amount must be greater than zero.",
    "actor_required": "An actor context is required for this operation.",
    "tenant_required": "A tenant must be given for this operation.",
    "status_invalid": "The requested status change is not allowed.",
    "invalid_transition": "The document cannot move to the requested status.",
    "forbidden": "This actor is not allowed to perform the operation.",
    "not_document_owner": "The document belongs to another supplier.",
    "guard_failed": "The document does not meet the conditions for this operation.",
    "rfq_not_ready_to_send": "The RFQ needs at least one line and one invited supplier.",
    "rfq_not_accepting_quotations": "The RFQ is not accepting quotations.",
    "supplier_not_invited": "The supplier was not invited to this RFQ.",
    "supplier_already_responded": "The supplier already responded to this RFQ.",
    "document_not_draft": "Only draft documents can be changed.",
    "purchase_order_not_receivable": "Goods cannot be received for this purchase order.",
    "purchase_order_supplier_mismatch": "The purchase order was issued to another supplier.",
    "receipt_exceeds_ordered": "Received quantity exceeds the remaining ordered quantity.",
    "receipt_quantity_not_positive": "Received quantity must be greater than zero.",
    "purchase_order_not_fully_received": "Every line must be fully received.",
    "line_not_found": "The line does not exist on this document.",
    "quotation_not_accepted": "The quotation has not been accepted.",
    "invoice_not_payable": "Payments can only be recorded on approved invoices.",
    "invoice_has_payments": "Invoices with recorded payments cannot be cancelled.",
    "invoice_not_fully_paid": "The invoice is not fully paid.",
    "invoice_not_paid": "Receipts can only be generated for paid invoices.",
    "invoice_already_generated": "An invoice was already generated for this quotation.",
    "overpayment": "The payment exceeds the outstanding balance.",
    "duplicate_receipt": "This goods receipt was already applied.",
    "duplicate_receipt_request": "This receipt request was already processed.",
    "receipt_already_exists": "A receipt already exists for this invoice.",
    "not_found": "The document was not found.",
    "concurrency_conflict": "The document was changed by another request. Reload and try again.",
}


def error_message(key: str, default: str | None = None) -> str:
    if key in ERROR_MESSAGES:
        return ERROR_MESSAGES[key]
    if default is not None:
        return default
    return key
