import unittest
from unittest.mock import patch

from erp_engine import create_app
from erp_engine.config import Config
from erp_engine.db import close_db
from erp_engine.errors import ConcurrencyConflict, GuardFailed, ReceiptAlreadyExists, ValidationError
from erp_engine.messages import error_message
from tests.helpers.temp_db import TempDbSandbox


def _build_temp_app(temp_db: TempDbSandbox, **overrides):
    attrs = {
        "DATABASE_DIR": temp_db.temp_dir,
        "DB_PATH": temp_db.db_path,
        "NOTIFIER_BACKEND": "recording",
        "PROPAGATE_EXCEPTIONS": False,
    }
    attrs.update(overrides)
    temp_config = type("TempConfig", (Config,), attrs)
    return create_app(temp_config)


class AppErrorTest(unittest.TestCase):
    def test_defaults_come_from_class(self) -> None:
        error = GuardFailed(details="rfq is closed")
        self.assertEqual(error.code, "guard_failed")
        self.assertEqual(error.http_status, 409)
        self.assertFalse(error.critical)
        self.assertEqual(str(error), "rfq is closed")

    def test_response_payload_merges_extra_fields(self) -> None:
        error = ReceiptAlreadyExists("inv-1", payload={"receipt_id": "rec-1"})
        payload = error.to_response_payload("req-1")
        self.assertEqual(payload["error"], "receipt_already_exists")
        self.assertEqual(payload["invoice_id"], "inv-1")
        self.assertEqual(payload["receipt_id"], "rec-1")
        self.assertEqual(payload["request_id"], "req-1")
        self.assertEqual(payload["message"], error_message("receipt_already_exists"))

    def test_unknown_message_key_falls_back(self) -> None:
        error = ValidationError(message_key="not_a_known_key")
        self.assertEqual(error.user_message(), error_message("unexpected_error"))


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = _build_temp_app(self._temp_db, TESTING=True)
        self.client = self.app.test_client()
        self.headers = {"X-Tenant-Id": "tenant-error-api", "X-Actor-Class": "buyer", "X-Actor-Id": "buyer-org"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _create_rfq(self) -> dict:
        response = self.client.post(
            "/api/rfqs",
            headers=self.headers,
            json={"title": "Errors", "lines": [{"quantity": "1", "unit_price": "5"}], "supplier_refs": ["s-1"]},
        )
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def test_validation_error_for_bad_line(self) -> None:
        response = self.client.post(
            "/api/rfqs",
            headers=self.headers,
            json={"title": "Errors", "lines": [{"quantity": "0", "unit_price": "5"}], "supplier_refs": ["s-1"]},
        )
        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "validation_error")
        self.assertEqual(payload.get("message"), error_message("quantity_not_positive"))
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_invalid_transition_for_cancelled_rfq(self) -> None:
        rfq = self._create_rfq()
        self.client.post(f"/api/rfqs/{rfq['id']}/cancel", headers=self.headers)
        response = self.client.post(f"/api/rfqs/{rfq['id']}/send", headers=self.headers)
        self.assertEqual(response.status_code, 409)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "invalid_transition")
        self.assertEqual(payload.get("message"), error_message("invalid_transition"))

    def test_stale_version_is_a_conflict(self) -> None:
        rfq = self._create_rfq()
        first = self.client.patch(
            f"/api/rfqs/{rfq['id']}",
            headers=self.headers,
            json={"title": "Errors v2", "version": rfq["version"]},
        )
        self.assertEqual(first.status_code, 200)
        stale = self.client.patch(
            f"/api/rfqs/{rfq['id']}",
            headers=self.headers,
            json={"title": "Errors v3", "version": rfq["version"]},
        )
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.get_json().get("error"), ConcurrencyConflict.default_code)

    def test_missing_document_is_not_found(self) -> None:
        response = self.client.get("/api/invoices/does-not-exist", headers=self.headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json().get("error"), "not_found")

    def test_request_id_is_echoed_on_errors(self) -> None:
        response = self.client.get("/api/rfqs/missing", headers={**self.headers, "X-Request-Id": "req-err-1"})
        self.assertEqual(response.headers.get("X-Request-Id"), "req-err-1")
        self.assertEqual(response.get_json().get("request_id"), "req-err-1")


class UnhandledErrorTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_unhandled", with_schema=False)
        self.app = _build_temp_app(self._temp_db, TESTING=False, DB_AUTO_INIT=False)
        self.client = self.app.test_client()
        self.headers = {"X-Tenant-Id": "tenant-error-api", "X-Actor-Class": "buyer", "X-Actor-Id": "buyer-org"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        with patch(
            "erp_engine.routes.document_routes.RfqWorkflow.list_visible",
            side_effect=RuntimeError("stack_secret_token"),
        ):
            response = self.client.get("/api/rfqs", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)


if __name__ == "__main__":
    unittest.main()
