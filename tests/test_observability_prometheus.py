import json
import logging
import unittest

from assinaturas.core import SubscriptionActivated, get_event_bus
from assinaturas.observability import JsonLogFormatter, set_log_request_id
from tests.helpers.billing_app import BillingAppHarness, card_payment


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self.harness = BillingAppHarness(prefix="observability_metrics")
        self.client = self.harness.client

    def tearDown(self) -> None:
        self.harness.cleanup()
        set_log_request_id(None)

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.post(
            "/api/billing/subscriptions",
            json={"plan_id": "basico", "payment": card_payment()},
            headers=self.harness.headers,
        )
        self.harness.post_webhook({"id": "evt_x", "type": "payment", "data": {"id": "1"}}, signature="sha256=00,ts=1")
        get_event_bus().publish(
            SubscriptionActivated(tenant_id="tenant-metrics", subscription_id=99, plan_id="basico", period_end="2026-11-17")
        )

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/plain", response.headers.get("Content-Type") or "")

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn('billing_gateway_charge_total{provider="simulator",status="approved"} 1', payload)
        self.assertIn('billing_reconciliation_total{outcome="applied"} 1', payload)
        self.assertIn('billing_webhook_signature_failure_total{provider="simulator"} 1', payload)
        self.assertIn("billing_concurrency_conflict_total 0", payload)
        self.assertIn("billing_charges_open 0", payload)
        self.assertIn('event_type="SubscriptionActivated"', payload)

    def test_open_charges_gauge_counts_pending_payments(self) -> None:
        self.client.post(
            "/api/billing/subscriptions",
            json={"plan_id": "basico", "payment": card_payment("tok_pending")},
            headers=self.harness.headers,
        )
        payload = self.client.get("/metrics").get_data(as_text=True)
        self.assertIn("billing_charges_open 1", payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="assinaturas",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="expiry_sweep_finished",
            args=(),
            exc_info=None,
        )
        record.expired = 2
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")
        self.assertEqual(parsed.get("message"), "expiry_sweep_finished")
        self.assertEqual(parsed.get("expired"), 2)

    def test_health_reports_gateway_and_charges(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}

        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("gateway"), "simulator")
        self.assertIn("http", payload.get("metrics") or {})
        self.assertIn("gateway_circuit", payload.get("metrics") or {})
        self.assertEqual((payload.get("charges") or {}).get("open_charges"), 0)


if __name__ == "__main__":
    unittest.main()
