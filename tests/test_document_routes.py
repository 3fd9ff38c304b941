import io
import unittest

from erp_engine import create_app
from erp_engine.config import Config
from erp_engine.db import close_db
from tests.helpers.engine import LINE_DISCOUNTED, LINE_TAXED
from tests.helpers.temp_db import TempDbSandbox


def _headers(actor_class: str, actor_id: str, tenant_id: str = "tenant-api") -> dict:
    return {"X-Tenant-Id": tenant_id, "X-Actor-Class": actor_class, "X-Actor-Id": actor_id}


BUYER = _headers("buyer", "buyer-org")
SUPPLIER_A = _headers("supplier", "supplier-a")
SUPPLIER_B = _headers("supplier", "supplier-b")


class DocumentRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="document_routes")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.notifier = self.app.extensions["erp_engine"]["notifier"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _post(self, path: str, headers: dict, payload: dict | None = None):
        return self.client.post(path, headers=headers, json=payload or {})

    def _sent_rfq(self, supplier_refs=("supplier-a",)) -> dict:
        created = self._post(
            "/api/rfqs",
            BUYER,
            {"title": "Fasteners", "lines": [LINE_TAXED, LINE_DISCOUNTED], "supplier_refs": list(supplier_refs)},
        )
        self.assertEqual(created.status_code, 201)
        sent = self._post(f"/api/rfqs/{created.get_json()['id']}/send", BUYER)
        self.assertEqual(sent.status_code, 200)
        return sent.get_json()

    def _paid_invoice(self) -> dict:
        rfq = self._sent_rfq()
        quotation = self._post(
            "/api/quotations",
            SUPPLIER_A,
            {"quotation_type": "manual_entry", "rfq_ref": rfq["id"], "lines": [LINE_TAXED, LINE_DISCOUNTED]},
        ).get_json()
        self._post(f"/api/quotations/{quotation['id']}/review", BUYER)
        self._post(f"/api/quotations/{quotation['id']}/decision", BUYER, {"decision": "accept"})
        invoice = self._post(f"/api/quotations/{quotation['id']}/invoice", BUYER).get_json()
        self._post(f"/api/invoices/{invoice['id']}/approve", BUYER)
        paid = self._post(f"/api/invoices/{invoice['id']}/payments", BUYER, {"amount": "1405.00"})
        self.assertEqual(paid.status_code, 200)
        return paid.get_json()

    def test_health_and_request_id(self) -> None:
        response = self.client.get("/health", headers={"X-Request-Id": "req-123"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ok")
        self.assertEqual(response.headers.get("X-Request-Id"), "req-123")

    def test_actor_headers_are_required(self) -> None:
        response = self.client.get("/api/rfqs")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "forbidden")

        response = self.client.get("/api/rfqs", headers={"X-Tenant-Id": "tenant-api", "X-Actor-Class": "auditor", "X-Actor-Id": "x"})
        self.assertEqual(response.status_code, 403)

    def test_system_actor_cannot_be_claimed_over_http(self) -> None:
        draft = self._post(
            "/api/invoices",
            SUPPLIER_A,
            {"due_date": "2030-01-31", "declared_totals": {"subtotal": "100"}},
        )
        self.assertEqual(draft.status_code, 201)
        self.assertEqual(self.client.get("/api/invoices", headers=BUYER).get_json()["items"], [])

        system = _headers("system", "system")
        listing = self.client.get("/api/invoices", headers=system)
        self.assertEqual(listing.status_code, 403)
        self.assertEqual(listing.get_json()["error"], "forbidden")
        self.assertEqual(self.client.get(f"/api/invoices/{draft.get_json()['id']}", headers=system).status_code, 403)

        rfq = self._sent_rfq()
        self.assertEqual(self._post(f"/api/rfqs/{rfq['id']}/close", system).status_code, 403)

    def test_rfq_payload_carries_flow_meta(self) -> None:
        rfq = self._sent_rfq()
        self.assertEqual(rfq["rfq_number"], "RFQ-000001")
        self.assertEqual(rfq["status"], "sent")
        self.assertEqual(rfq["flow"]["kind"], "rfq")
        self.assertEqual(rfq["flow"]["allowed_transitions"], ["cancelled", "closed"])
        self.assertFalse(rfq["flow"]["terminal"])

        invitations = [item for item in self.notifier.sent if item.template_kind == "rfq_invitation"]
        self.assertEqual([item.recipient for item in invitations], ["supplier-a"])

    def test_supplier_listing_hides_drafts(self) -> None:
        self._post("/api/rfqs", BUYER, {"title": "Draft", "lines": [LINE_TAXED], "supplier_refs": ["supplier-a"]})
        sent = self._sent_rfq()

        listed = self.client.get("/api/rfqs", headers=SUPPLIER_A).get_json()["items"]
        self.assertEqual([item["id"] for item in listed], [sent["id"]])
        self.assertEqual(len(self.client.get("/api/rfqs", headers=BUYER).get_json()["items"]), 2)
        self.assertEqual(self.client.get(f"/api/rfqs/{sent['id']}", headers=SUPPLIER_B).status_code, 403)

    def test_quotation_to_receipt_flow(self) -> None:
        rfq = self._sent_rfq()
        submitted = self._post(
            "/api/quotations",
            SUPPLIER_A,
            {"quotation_type": "manual_entry", "rfq_ref": rfq["id"], "lines": [LINE_TAXED, LINE_DISCOUNTED]},
        )
        self.assertEqual(submitted.status_code, 201)
        quotation = submitted.get_json()
        self.assertEqual(quotation["total_amount"], "1405.00")

        premature = self._post(f"/api/quotations/{quotation['id']}/decision", BUYER, {"decision": "accept"})
        self.assertEqual(premature.status_code, 409)
        self.assertEqual(premature.get_json()["error"], "invalid_transition")

        self._post(f"/api/quotations/{quotation['id']}/review", BUYER)
        decided = self._post(f"/api/quotations/{quotation['id']}/decision", BUYER, {"decision": "accept"})
        self.assertEqual(decided.get_json()["status"], "accepted")
        self.assertEqual(self.client.get(f"/api/rfqs/{rfq['id']}", headers=BUYER).get_json()["status"], "closed")

        created = self._post(f"/api/quotations/{quotation['id']}/invoice", BUYER)
        self.assertEqual(created.status_code, 201)
        invoice = created.get_json()
        self.assertEqual(invoice["status"], "pending")
        self.assertEqual(invoice["display_status"], "pending")
        self.assertFalse(invoice["is_overdue"])
        self.assertEqual(invoice["total_amount"], "1405.00")

        again = self._post(f"/api/quotations/{quotation['id']}/invoice", BUYER)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["invoice_id"], invoice["id"])

        self._post(f"/api/invoices/{invoice['id']}/approve", BUYER)
        partial = self._post(f"/api/invoices/{invoice['id']}/payments", BUYER, {"amount": "405"})
        self.assertEqual(partial.get_json()["balance_due"], "1000.00")
        over = self._post(f"/api/invoices/{invoice['id']}/payments", BUYER, {"amount": "1000.01"})
        self.assertEqual(over.status_code, 422)
        self.assertEqual(over.get_json()["error"], "overpayment")
        self.assertEqual(over.get_json()["balance_due"], "1000.00")
        paid = self._post(f"/api/invoices/{invoice['id']}/payments", BUYER, {"amount": "1000"})
        self.assertEqual(paid.get_json()["status"], "paid")

        receipt = self._post(f"/api/invoices/{invoice['id']}/receipt", BUYER)
        self.assertEqual(receipt.status_code, 201)
        self.assertEqual(receipt.get_json()["receipt_number"], "REC-000001")
        self.assertEqual(receipt.get_json()["amount"], "1405.00")

        fetched = self.client.get(f"/api/invoices/{invoice['id']}/receipt", headers=SUPPLIER_A)
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.get_json()["id"], receipt.get_json()["id"])

        kinds = [item.template_kind for item in self.notifier.sent]
        for kind in ("rfq_invitation", "quotation_decision", "invoice_submitted", "payment_recorded", "receipt_generated"):
            self.assertIn(kind, kinds)

    def test_repeated_receipt_request(self) -> None:
        invoice = self._paid_invoice()
        first = self._post(f"/api/invoices/{invoice['id']}/receipt", BUYER)
        self.assertEqual(first.status_code, 201)
        second = self._post(f"/api/invoices/{invoice['id']}/receipt", BUYER)
        self.assertEqual(second.status_code, 409)
        payload = second.get_json()
        self.assertEqual(payload["error"], "receipt_already_exists")
        self.assertEqual(payload["invoice_id"], invoice["id"])
        self.assertTrue(payload["request_id"])

    def test_file_upload_quotation(self) -> None:
        response = self.client.post(
            "/api/quotations",
            headers=SUPPLIER_A,
            data={"total_amount": "812.50", "file": (io.BytesIO(b"%PDF-1.7 offer"), "offer.pdf")},
            content_type="multipart/form-data",
        )
        self.assertEqual(response.status_code, 201)
        quotation = response.get_json()
        self.assertEqual(quotation["quotation_type"], "file_upload")
        self.assertEqual(quotation["total_amount"], "812.50")

        download = self.client.get(f"/api/quotations/{quotation['id']}/file", headers=BUYER)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b"%PDF-1.7 offer")
        self.assertEqual(self.client.get(f"/api/quotations/{quotation['id']}/file", headers=SUPPLIER_B).status_code, 403)

    def test_goods_receipts_over_http(self) -> None:
        created = self._post(
            "/api/purchase-orders",
            BUYER,
            {
                "supplier_ref": "supplier-a",
                "warehouse_ref": "WH-1",
                "lines": [{"description": "Copper wire", "quantity": "100", "unit_price": "2.50"}],
            },
        )
        self.assertEqual(created.status_code, 201)
        purchase_order = created.get_json()
        self.assertEqual(purchase_order["po_number"], "PO000001")
        line_id = purchase_order["lines"][0]["line_id"]
        self._post(f"/api/purchase-orders/{purchase_order['id']}/send", BUYER)

        path = f"/api/purchase-orders/{purchase_order['id']}/receipts"
        first = self.client.post(
            path,
            headers={**BUYER, "Idempotency-Key": "grn-1"},
            json={"line_id": line_id, "quantity_received": "40"},
        )
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.get_json()["status"], "partially_received")

        replay = self.client.post(
            path,
            headers={**BUYER, "Idempotency-Key": "grn-1"},
            json={"line_id": line_id, "quantity_received": "40"},
        )
        self.assertEqual(replay.status_code, 409)
        self.assertEqual(replay.get_json()["error"], "duplicate_receipt")

        over = self._post(path, BUYER, {"line_id": line_id, "quantity_received": "61", "idempotency_token": "grn-2"})
        self.assertEqual(over.status_code, 409)
        self.assertEqual(over.get_json()["error"], "guard_failed")
        self.assertIn("remaining", over.get_json())

        done = self._post(path, BUYER, {"line_id": line_id, "quantity_received": "60", "idempotency_token": "grn-3"})
        self.assertEqual(done.get_json()["status"], "received")
        self.assertTrue(done.get_json()["flow"]["terminal"])

    def test_manual_invoice_validation_and_overdue_filter(self) -> None:
        bad = self._post(
            "/api/invoices",
            SUPPLIER_A,
            {"invoice_date": "2026-01-10", "due_date": "2026-01-01", "declared_totals": {"subtotal": "100"}},
        )
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.get_json()["error"], "validation_error")

        late = self._post(
            "/api/invoices",
            SUPPLIER_A,
            {"invoice_date": "2020-01-01", "due_date": "2020-01-31", "declared_totals": {"subtotal": "100"}},
        ).get_json()
        self.assertEqual(late["status"], "draft")
        self.assertEqual(late["display_status"], "draft")
        self.assertEqual(self.client.get("/api/invoices", headers=BUYER).get_json()["items"], [])

        sent = self._post(f"/api/invoices/{late['id']}/send", SUPPLIER_A).get_json()
        self.assertEqual(sent["display_status"], "overdue")
        overdue = self.client.get("/api/invoices?overdue=1", headers=BUYER).get_json()["items"]
        self.assertEqual([item["id"] for item in overdue], [late["id"]])

    def test_rejections_are_counted(self) -> None:
        self._post("/api/rfqs", SUPPLIER_A, {"title": "x", "lines": [LINE_TAXED], "supplier_refs": []})
        metrics = self.client.get("/metrics")
        self.assertEqual(metrics.status_code, 200)
        self.assertIn('operation_rejected_total{error_code="forbidden"}', metrics.get_data(as_text=True))


if __name__ == "__main__":
    unittest.main()
