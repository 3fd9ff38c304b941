import json
import logging
import unittest

from erp_engine import create_app
from erp_engine.config import Config
from erp_engine.db import close_db
from erp_engine.observability import JsonLogFormatter, reset_metrics_for_tests, set_log_request_id
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = False


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics", with_schema=False)
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        self.client.get("/api/rfqs")

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        content_type = response.headers.get("Content-Type") or ""
        self.assertIn("text/plain", content_type)

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("X-Response-Time-Ms", response.headers)
        self.assertIn("domain_event_emitted_total", payload)
        self.assertIn("notification_failed_total", payload)
        self.assertIn('operation_rejected_total{error_code="forbidden"} 1', payload)
        self.assertIn('route="/api/rfqs"', payload)

    def test_domain_events_are_exported(self) -> None:
        headers = {"X-Tenant-Id": "tenant-metrics", "X-Actor-Class": "buyer", "X-Actor-Id": "buyer-org"}
        with self.app.app_context():
            from erp_engine.db import init_db

            init_db()
        created = self.client.post(
            "/api/rfqs",
            headers=headers,
            json={"title": "Cables", "lines": [{"quantity": "1", "unit_price": "10"}], "supplier_refs": ["s-1"]},
        ).get_json()
        self.client.post(f"/api/rfqs/{created['id']}/send", headers=headers)

        payload = self.client.get("/metrics").get_data(as_text=True)
        self.assertIn('domain_event_emitted_total{event_type="RfqSent"} 1', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="erp_engine",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="payment_recorded",
            args=(),
            exc_info=None,
        )
        record.invoice_id = "inv-1"
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")
        self.assertEqual(parsed.get("invoice_id"), "inv-1")
        self.assertEqual(parsed.get("message"), "payment_recorded")

    def test_health_reports_db_backend(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("db"), "sqlite")
        self.assertIn("requests_total", payload["metrics"]["http"])


if __name__ == "__main__":
    unittest.main()
