from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify, request

from erp_engine.application.invoice_workflow import InvoiceWorkflow, display_status, is_overdue
from erp_engine.application.purchase_order_workflow import PurchaseOrderWorkflow
from erp_engine.application.quotation_intake import QuotationIntake
from erp_engine.application.receipt_generator import ReceiptGenerator
from erp_engine.application.rfq_workflow import RfqWorkflow
from erp_engine.db import get_db
from erp_engine.domain.contracts import (
    ActorContext,
    DeclaredTotals,
    InvoiceCreateInput,
    PurchaseOrderCreateInput,
    QuotationSubmitInput,
    RfqCreateInput,
)
from erp_engine.domain.models import Document, VendorInvoice, utc_now
from erp_engine.errors import Forbidden, ValidationError
from erp_engine.infrastructure.repositories.sql import SqlDocumentRepository
from erp_engine.procurement.flow_policy import flow_meta


documents_bp = Blueprint("documents", __name__, url_prefix="/api")


def _actor() -> ActorContext:
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise Forbidden(message_key="tenant_required", details="missing X-Tenant-Id header")
    return ActorContext.resolve(
        request.headers.get("X-Actor-Class"),
        request.headers.get("X-Actor-Id"),
        tenant_id,
    )


def _engine() -> Dict[str, Any]:
    return current_app.extensions["erp_engine"]


def _repository(actor: ActorContext) -> SqlDocumentRepository:
    return SqlDocumentRepository(tenant_id=actor.tenant_id, db=get_db())


def _workflow_options() -> Dict[str, Any]:
    return {
        "event_bus": _engine()["event_bus"],
        "currency": current_app.config.get("DEFAULT_CURRENCY", "INR"),
    }


def _rfqs(actor: ActorContext) -> RfqWorkflow:
    return RfqWorkflow(_repository(actor), **_workflow_options())


def _quotations(actor: ActorContext) -> QuotationIntake:
    return QuotationIntake(_repository(actor), file_store=_engine()["file_store"], **_workflow_options())


def _purchase_orders(actor: ActorContext) -> PurchaseOrderWorkflow:
    return PurchaseOrderWorkflow(_repository(actor), **_workflow_options())


def _invoices(actor: ActorContext) -> InvoiceWorkflow:
    return InvoiceWorkflow(
        _repository(actor),
        payment_terms_days=current_app.config.get("INVOICE_PAYMENT_TERMS_DAYS", 30),
        **_workflow_options(),
    )


def _receipts(actor: ActorContext) -> ReceiptGenerator:
    return ReceiptGenerator(
        _repository(actor),
        default_payment_method=current_app.config.get("RECEIPT_DEFAULT_PAYMENT_METHOD", "bank_transfer"),
        **_workflow_options(),
    )


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(details="request body must be a JSON object")
    return payload


def _flag(value: Any) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _serialize(document: Document, actor: ActorContext) -> Dict[str, Any]:
    payload = document.to_dict()
    payload["flow"] = flow_meta(document.kind, document.status_value, actor.actor_class)
    if isinstance(document, VendorInvoice):
        now = utc_now()
        payload["is_overdue"] = is_overdue(document, now)
        payload["display_status"] = display_status(document, now)
    return payload


def _one(document: Document, actor: ActorContext, status: int = 200):
    return jsonify(_serialize(document, actor)), status


def _many(documents, actor: ActorContext):
    return jsonify({"items": [_serialize(document, actor) for document in documents]})


# -- RFQs ---------------------------------------------------------------------


@documents_bp.route("/rfqs", methods=["GET", "POST"])
def rfqs_api():
    actor = _actor()
    if request.method == "GET":
        return _many(_rfqs(actor).list_visible(actor, request.args.get("status") or None), actor)

    payload = _payload()
    rfq = _rfqs(actor).create(
        actor,
        RfqCreateInput(
            title=payload.get("title"),
            lines=payload.get("lines") or [],
            supplier_refs=payload.get("supplier_refs") or [],
            deadline_date=payload.get("deadline_date"),
            notes=payload.get("notes"),
        ),
    )
    return _one(rfq, actor, 201)


@documents_bp.route("/rfqs/<string:rfq_id>", methods=["GET", "PATCH"])
def rfq_api(rfq_id: str):
    actor = _actor()
    if request.method == "GET":
        return _one(_rfqs(actor).get(actor, rfq_id), actor)

    payload = _payload()
    rfq = _rfqs(actor).update_draft(
        actor,
        rfq_id,
        title=payload.get("title"),
        lines=payload.get("lines"),
        supplier_refs=payload.get("supplier_refs"),
        deadline_date=payload.get("deadline_date"),
        notes=payload.get("notes"),
        expected_version=payload.get("version"),
    )
    return _one(rfq, actor)


@documents_bp.route("/rfqs/<string:rfq_id>/send", methods=["POST"])
def rfq_send(rfq_id: str):
    actor = _actor()
    return _one(_rfqs(actor).send(actor, rfq_id), actor)


@documents_bp.route("/rfqs/<string:rfq_id>/decline", methods=["POST"])
def rfq_decline(rfq_id: str):
    actor = _actor()
    return _one(_rfqs(actor).decline_invitation(actor, rfq_id, _payload().get("notes")), actor)


@documents_bp.route("/rfqs/<string:rfq_id>/close", methods=["POST"])
def rfq_close(rfq_id: str):
    actor = _actor()
    return _one(_rfqs(actor).close(actor, rfq_id), actor)


@documents_bp.route("/rfqs/<string:rfq_id>/cancel", methods=["POST"])
def rfq_cancel(rfq_id: str):
    actor = _actor()
    return _one(_rfqs(actor).cancel(actor, rfq_id), actor)


# -- quotations ---------------------------------------------------------------


def _quotation_input() -> QuotationSubmitInput:
    upload = request.files.get("file")
    if upload is not None:
        # multipart submission of a quotation document
        form = request.form
        return QuotationSubmitInput(
            quotation_type=form.get("quotation_type") or "file_upload",
            rfq_ref=form.get("rfq_ref"),
            po_ref=form.get("po_ref"),
            file_name=upload.filename,
            file_bytes=upload.read(),
            total_amount=form.get("total_amount"),
            notes=form.get("notes"),
        )
    payload = _payload()
    return QuotationSubmitInput(
        quotation_type=payload.get("quotation_type"),
        rfq_ref=payload.get("rfq_ref"),
        po_ref=payload.get("po_ref"),
        lines=payload.get("lines") or [],
        file_ref=payload.get("file_ref"),
        file_name=payload.get("file_name"),
        total_amount=payload.get("total_amount"),
        notes=payload.get("notes"),
    )


@documents_bp.route("/quotations", methods=["GET", "POST"])
def quotations_api():
    actor = _actor()
    if request.method == "GET":
        quotations = _quotations(actor).list_visible(
            actor,
            status=request.args.get("status") or None,
            rfq_ref=request.args.get("rfq_ref") or None,
            po_ref=request.args.get("po_ref") or None,
        )
        return _many(quotations, actor)
    return _one(_quotations(actor).submit(actor, _quotation_input()), actor, 201)


@documents_bp.route("/quotations/<string:quotation_id>", methods=["GET"])
def quotation_api(quotation_id: str):
    actor = _actor()
    return _one(_quotations(actor).get(actor, quotation_id), actor)


@documents_bp.route("/quotations/<string:quotation_id>/file", methods=["GET"])
def quotation_file(quotation_id: str):
    actor = _actor()
    content = _quotations(actor).file_content(actor, quotation_id)
    return Response(content, mimetype="application/octet-stream")


@documents_bp.route("/quotations/<string:quotation_id>/review", methods=["POST"])
def quotation_review(quotation_id: str):
    actor = _actor()
    return _one(_quotations(actor).review(actor, quotation_id), actor)


@documents_bp.route("/quotations/<string:quotation_id>/decision", methods=["POST"])
def quotation_decision(quotation_id: str):
    actor = _actor()
    quotation = _quotations(actor).decide(actor, quotation_id, _payload().get("decision"))
    return _one(quotation, actor)


@documents_bp.route("/quotations/<string:quotation_id>/invoice", methods=["POST"])
def quotation_invoice(quotation_id: str):
    actor = _actor()
    return _one(_invoices(actor).create_from_quotation(actor, quotation_id), actor, 201)


# -- purchase orders ----------------------------------------------------------


@documents_bp.route("/purchase-orders", methods=["GET", "POST"])
def purchase_orders_api():
    actor = _actor()
    if request.method == "GET":
        orders = _purchase_orders(actor).list_visible(actor, request.args.get("status") or None)
        return _many(orders, actor)

    payload = _payload()
    purchase_order = _purchase_orders(actor).create(
        actor,
        PurchaseOrderCreateInput(
            supplier_ref=payload.get("supplier_ref"),
            warehouse_ref=payload.get("warehouse_ref"),
            lines=payload.get("lines") or [],
            po_date=payload.get("po_date"),
            expected_delivery_date=payload.get("expected_delivery_date"),
            notes=payload.get("notes"),
        ),
    )
    return _one(purchase_order, actor, 201)


@documents_bp.route("/purchase-orders/<string:purchase_order_id>", methods=["GET", "PATCH"])
def purchase_order_api(purchase_order_id: str):
    actor = _actor()
    if request.method == "GET":
        return _one(_purchase_orders(actor).get(actor, purchase_order_id), actor)

    payload = _payload()
    purchase_order = _purchase_orders(actor).update_draft(
        actor,
        purchase_order_id,
        lines=payload.get("lines"),
        warehouse_ref=payload.get("warehouse_ref"),
        expected_delivery_date=payload.get("expected_delivery_date"),
        notes=payload.get("notes"),
        expected_version=payload.get("version"),
    )
    return _one(purchase_order, actor)


@documents_bp.route("/purchase-orders/<string:purchase_order_id>/send", methods=["POST"])
def purchase_order_send(purchase_order_id: str):
    actor = _actor()
    return _one(_purchase_orders(actor).send(actor, purchase_order_id), actor)


@documents_bp.route("/purchase-orders/<string:purchase_order_id>/confirm", methods=["POST"])
def purchase_order_confirm(purchase_order_id: str):
    actor = _actor()
    return _one(_purchase_orders(actor).confirm(actor, purchase_order_id), actor)


@documents_bp.route("/purchase-orders/<string:purchase_order_id>/cancel", methods=["POST"])
def purchase_order_cancel(purchase_order_id: str):
    actor = _actor()
    return _one(_purchase_orders(actor).cancel(actor, purchase_order_id), actor)


@documents_bp.route("/purchase-orders/<string:purchase_order_id>/receipts", methods=["POST"])
def purchase_order_receipt(purchase_order_id: str):
    actor = _actor()
    payload = _payload()
    token = payload.get("idempotency_token") or request.headers.get("Idempotency-Key")
    purchase_order = _purchase_orders(actor).record_receipt(
        actor,
        purchase_order_id,
        str(payload.get("line_id") or ""),
        payload.get("quantity_received"),
        token,
    )
    return _one(purchase_order, actor)


# -- invoices and receipts ----------------------------------------------------


@documents_bp.route("/invoices", methods=["GET", "POST"])
def invoices_api():
    actor = _actor()
    if request.method == "GET":
        invoices = _invoices(actor).list_visible(
            actor,
            status=request.args.get("status") or None,
            overdue=_flag(request.args.get("overdue")),
        )
        return _many(invoices, actor)

    payload = _payload()
    declared = payload.get("declared_totals")
    invoice = _invoices(actor).create_manual(
        actor,
        InvoiceCreateInput(
            due_date=payload.get("due_date"),
            lines=payload.get("lines") or [],
            declared_totals=(
                DeclaredTotals(subtotal=declared.get("subtotal"), tax_amount=declared.get("tax_amount") or "0")
                if isinstance(declared, dict)
                else None
            ),
            po_ref=payload.get("po_ref"),
            invoice_date=payload.get("invoice_date"),
            shipping_charges=payload.get("shipping_charges") or "0",
            discount_amount=payload.get("discount_amount") or "0",
            file_ref=payload.get("file_ref"),
            notes=payload.get("notes"),
        ),
    )
    return _one(invoice, actor, 201)


@documents_bp.route("/invoices/<string:invoice_id>", methods=["GET"])
def invoice_api(invoice_id: str):
    actor = _actor()
    return _one(_invoices(actor).get(actor, invoice_id), actor)


@documents_bp.route("/invoices/<string:invoice_id>/send", methods=["POST"])
def invoice_send(invoice_id: str):
    actor = _actor()
    return _one(_invoices(actor).send(actor, invoice_id), actor)


@documents_bp.route("/invoices/<string:invoice_id>/approve", methods=["POST"])
def invoice_approve(invoice_id: str):
    actor = _actor()
    return _one(_invoices(actor).approve(actor, invoice_id), actor)


@documents_bp.route("/invoices/<string:invoice_id>/cancel", methods=["POST"])
def invoice_cancel(invoice_id: str):
    actor = _actor()
    return _one(_invoices(actor).cancel(actor, invoice_id), actor)


@documents_bp.route("/invoices/<string:invoice_id>/payments", methods=["POST"])
def invoice_payment(invoice_id: str):
    actor = _actor()
    payload = _payload()
    invoice = _invoices(actor).record_payment(
        actor,
        invoice_id,
        payload.get("amount"),
        method=payload.get("method"),
        reference=payload.get("reference"),
    )
    return _one(invoice, actor)


@documents_bp.route("/invoices/<string:invoice_id>/receipt", methods=["GET", "POST"])
def invoice_receipt(invoice_id: str):
    actor = _actor()
    if request.method == "GET":
        return _one(_receipts(actor).receipt_for(actor, invoice_id), actor)

    payload = _payload()
    receipt = _receipts(actor).generate(
        actor,
        invoice_id,
        payment_method=payload.get("payment_method"),
        payment_reference=payload.get("payment_reference"),
        notes=payload.get("notes"),
    )
    return _one(receipt, actor, 201)
