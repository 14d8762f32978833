import unittest

from assinaturas.contexts.billing.infrastructure.repositories.webhook_event_repository import (
    STATUS_FAILED,
    STATUS_PROCESSED,
)
from assinaturas.db import get_db
from tests.helpers.billing_app import BillingAppHarness, card_payment, pix_payment


class WebhookIngressTest(unittest.TestCase):
    def setUp(self) -> None:
        self.harness = BillingAppHarness(prefix="webhooks")
        self.client = self.harness.client
        self.gateway = self.harness.gateway

    def tearDown(self) -> None:
        self.harness.cleanup()

    def _subscribe(self, payment: dict) -> dict:
        response = self.client.post(
            "/api/billing/subscriptions",
            json={"plan_id": "basico", "billing_cycle": "mensal", "payment": payment},
            headers=self.harness.headers,
        )
        return response.get_json()

    def _subscription(self, subscription_id: int) -> dict:
        response = self.client.get(f"/api/billing/subscriptions/{subscription_id}", headers=self.harness.headers)
        return response.get_json()["subscription"]

    def _webhook_rows(self) -> list[dict]:
        with self.harness.app.app_context():
            rows = get_db().execute(
                "SELECT provider, event_id, status, outcome FROM webhook_events ORDER BY id"
            ).fetchall()
            return [dict(row) for row in rows]

    def test_duplicate_delivery_mutates_once(self) -> None:
        self.gateway.queue_external_id("pix_1")
        created = self._subscribe(pix_payment())
        self.assertEqual(created["subscription"]["status"], "pendente")
        self.assertEqual(created["charge"]["status"], "pending")

        self.gateway.approve("pix_1")
        first, second = self.gateway.drain_webhooks(duplicate=True)

        processed = self.harness.post_webhook(first).get_json()
        duplicate = self.harness.post_webhook(second).get_json()

        self.assertEqual(processed["status"], "processed")
        self.assertEqual(processed["outcome"], "applied")
        self.assertEqual(duplicate["status"], "duplicate")
        self.assertEqual(duplicate["event_id"], processed["event_id"])

        subscription = self._subscription(created["subscription"]["id"])
        self.assertEqual(subscription["status"], "ativa")
        self.assertEqual(subscription["version"], 2)
        self.assertEqual(self.harness.mailer.templates(), ["subscription_activated"])
        self.assertEqual([row["status"] for row in self._webhook_rows()], [STATUS_PROCESSED])

    def test_redelivered_status_with_new_event_id_is_a_no_op(self) -> None:
        self.gateway.queue_external_id("pix_2")
        created = self._subscribe(pix_payment())
        approved = self.gateway.approve("pix_2")
        (delivery,) = self.gateway.drain_webhooks()
        self.harness.post_webhook(delivery)

        redelivery = self.gateway.build_webhook(approved)
        response = self.harness.post_webhook(redelivery).get_json()

        self.assertEqual(response["status"], "processed")
        self.assertEqual(response["outcome"], "duplicate")
        self.assertEqual(self._subscription(created["subscription"]["id"])["version"], 2)
        self.assertEqual(self.harness.mailer.templates(), ["subscription_activated"])

    def test_out_of_order_deliveries_converge(self) -> None:
        self.gateway.queue_external_id("pay_ooo")
        created = self._subscribe(card_payment("tok_pending"))
        self.gateway.set_status("pay_ooo", "pending")
        self.gateway.approve("pay_ooo")
        pending, approved = self.gateway.drain_webhooks()

        late = self.harness.post_webhook(approved).get_json()
        stale = self.harness.post_webhook(pending).get_json()

        self.assertEqual(late["outcome"], "applied")
        self.assertEqual(stale["outcome"], "stale")
        subscription = self._subscription(created["subscription"]["id"])
        self.assertEqual(subscription["status"], "ativa")
        self.assertEqual(subscription["external_transaction_id"], "pay_ooo")

    def test_shuffled_duplicated_stream_reaches_the_final_state(self) -> None:
        self.gateway.queue_external_id("pay_mix")
        created = self._subscribe(card_payment())
        self.assertEqual(created["subscription"]["status"], "ativa")
        self.gateway.approve("pay_mix")
        self.gateway.refund("pay_mix")

        for delivery in self.gateway.drain_webhooks(duplicate=True, shuffle=True, seed=3):
            self.assertEqual(self.harness.post_webhook(delivery).status_code, 200)

        charges = self.client.get(
            f"/api/billing/subscriptions/{created['subscription']['id']}/charges",
            headers=self.harness.headers,
        ).get_json()["items"]
        self.assertEqual(charges[0]["status"], "refunded")
        self.assertEqual(self._subscription(created["subscription"]["id"])["status"], "suspensa")
        self.assertEqual(self.harness.mailer.templates().count("subscription_suspended"), 1)

    def test_invalid_signature_is_unauthorized(self) -> None:
        self.gateway.queue_external_id("pay_sig")
        self._subscribe(card_payment())
        delivery = self.gateway.build_webhook(self.gateway.refund("pay_sig"))

        response = self.harness.post_webhook(delivery, signature="sha256=deadbeef,ts=1760000000")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "webhook_signature_invalid")
        self.assertIn("request_id", response.get_json())

        unsigned = self.client.post("/webhooks/simulator", json=delivery)
        self.assertEqual(unsigned.status_code, 401)
        self.assertEqual(self._webhook_rows(), [])

    def test_malformed_payload_is_bad_request(self) -> None:
        for payload in ({"type": "payment"}, {"data": {"id": "1"}}, ["payment"]):
            with self.subTest(payload=payload):
                response = self.client.post(
                    "/webhooks/simulator",
                    json=payload,
                    headers={"X-Signature": "sha256=00,ts=1"},
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json()["error"], "webhook_payload_invalid")

    def test_malformed_payload_logs_its_shape(self) -> None:
        payload = {"action": "payment.updated", "resource": "x" * 900}
        with self.assertLogs("assinaturas.billing.webhooks", level="WARNING") as logs:
            response = self.client.post("/webhooks/simulator", json=payload)

        self.assertEqual(response.status_code, 400)
        record = next(item for item in logs.records if item.getMessage() == "webhook_payload_invalid")
        self.assertEqual(record.payload_keys, ["action", "resource"])
        self.assertEqual(record.payload_type, "dict")
        self.assertEqual(len(record.body_excerpt), 500)
        self.assertTrue(record.body_excerpt.startswith("{"))

    def test_unknown_provider_is_not_found(self) -> None:
        response = self.client.post("/webhooks/pagseguro", json={"type": "payment", "data": {"id": "1"}})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "webhook_provider_unknown")

    def test_non_payment_topics_are_ignored(self) -> None:
        delivery = {"id": "evt_plan", "type": "plan", "data": {"id": "plan_1"}}
        response = self.harness.post_webhook(delivery)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ignored")
        self.assertEqual(self._webhook_rows(), [])

    def test_unknown_payment_is_stored_as_failed(self) -> None:
        delivery = {"id": "evt_orphan", "type": "payment", "data": {"id": "pay_nobody"}}
        response = self.harness.post_webhook(delivery)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "failed")
        rows = self._webhook_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["event_id"], "evt_orphan")
        self.assertEqual(rows[0]["status"], STATUS_FAILED)

    def test_failed_delivery_is_processed_when_retried(self) -> None:
        self.gateway.queue_external_id("pix_retry")
        created = self._subscribe(pix_payment())
        self.gateway.approve("pix_retry")
        (delivery,) = self.gateway.drain_webhooks()

        self.gateway.fail_next_queries = 1
        first = self.harness.post_webhook(delivery).get_json()
        retried = self.harness.post_webhook(delivery).get_json()

        self.assertEqual(first["status"], "failed")
        self.assertEqual(retried["status"], "processed")
        self.assertEqual(self._subscription(created["subscription"]["id"])["status"], "ativa")
        self.assertEqual([row["status"] for row in self._webhook_rows()], [STATUS_PROCESSED])


if __name__ == "__main__":
    unittest.main()
