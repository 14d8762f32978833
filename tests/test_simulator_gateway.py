import unittest

from assinaturas.contexts.billing.domain.gateway import GatewayError, GatewayRejected
from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import PaymentRequest, PaymentStatus
from assinaturas.contexts.billing.infrastructure.simulator.fake_gateway import SimulatedPaymentGateway


def _card(token: str = "tok_approved", **overrides) -> PaymentRequest:
    attrs = {
        "amount": Money.of(9990),
        "description": "Assinatura Basico (mensal)",
        "payer_email": "financeiro@empresa.com.br",
        "payment_method": "credit_card",
        "card_token": token,
    }
    attrs.update(overrides)
    return PaymentRequest(**attrs)


class SimulatedGatewayTest(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = SimulatedPaymentGateway(webhook_secret="segredo")

    def test_same_idempotency_key_never_charges_twice(self) -> None:
        first = self.gateway.charge(_card(), "sub_1_initial_20261018")
        second = self.gateway.charge(_card(), "sub_1_initial_20261018")

        self.assertEqual(first.external_id, second.external_id)
        self.assertIs(first.status, PaymentStatus.APPROVED)
        self.assertEqual(len(self.gateway.payments_for_key("sub_1_initial_20261018")), 1)
        self.assertEqual(self.gateway.charge_calls, 2)

    def test_card_token_drives_outcome(self) -> None:
        rejected = self.gateway.charge(_card("tok_rejected_insufficient_amount"), "key-rejected")
        self.assertIs(rejected.status, PaymentStatus.REJECTED)
        self.assertEqual(rejected.status_detail, "cc_rejected_insufficient_amount")
        self.assertTrue(rejected.error_message)

        pending = self.gateway.charge(_card("tok_pending"), "key-pending")
        self.assertIs(pending.status, PaymentStatus.IN_PROCESS)

        with self.assertRaises(GatewayRejected) as ctx:
            self.gateway.charge(_card("tok_declined"), "key-declined")
        self.assertEqual(ctx.exception.status_detail, "cc_rejected_bad_filled_other")

    def test_lost_response_is_found_by_reference(self) -> None:
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.charge(_card("tok_timeout"), "key-timeout")
        self.assertEqual(ctx.exception.code, "timeout")
        found = self.gateway.find_by_reference("key-timeout")
        self.assertIsNotNone(found)
        self.assertEqual(found.external_reference, "key-timeout")

        with self.assertRaises(GatewayError):
            self.gateway.charge(_card("tok_unreachable"), "key-unreachable")
        self.assertIsNone(self.gateway.find_by_reference("key-unreachable"))

    def test_pix_stays_pending_until_approved(self) -> None:
        self.gateway.queue_external_id("pix_1")
        request = _card(None, payment_method="pix")
        result = self.gateway.charge(request, "key-pix")
        self.assertEqual(result.external_id, "pix_1")
        self.assertIs(result.status, PaymentStatus.PENDING)
        self.assertEqual(self.gateway.pending_webhook_count(), 0)

        self.gateway.approve("pix_1")
        deliveries = self.gateway.drain_webhooks(duplicate=True)
        self.assertEqual(len(deliveries), 2)
        self.assertEqual(deliveries[0], deliveries[1])
        self.assertEqual(deliveries[0]["data"]["status"], "approved")
        self.assertIs(self.gateway.query_status("pix_1").status, PaymentStatus.APPROVED)

    def test_embedded_webhook_status_may_be_older_than_current(self) -> None:
        self.gateway.queue_external_id("pay_7")
        self.gateway.charge(_card("tok_pending"), "key-embedded")
        self.gateway.approve("pay_7")
        self.gateway.refund("pay_7")
        approved_delivery, refunded_delivery = self.gateway.drain_webhooks()

        self.assertIs(self.gateway.parse_webhook(approved_delivery).status, PaymentStatus.APPROVED)
        self.assertIs(self.gateway.parse_webhook(refunded_delivery).status, PaymentStatus.REFUNDED)
        bare = {"type": "payment", "data": {"id": "pay_7"}}
        self.assertIs(self.gateway.parse_webhook(bare).status, PaymentStatus.REFUNDED)

    def test_signature_round_trip(self) -> None:
        self.gateway.queue_external_id("pay_sig")
        result = self.gateway.charge(_card(), "key-sig")
        delivery = self.gateway.build_webhook(result)
        signature = self.gateway.sign(delivery)

        self.assertTrue(self.gateway.verify_webhook_signature(delivery, signature))
        self.assertFalse(self.gateway.verify_webhook_signature(delivery, signature.replace("sha256=", "sha256=0")))
        self.assertFalse(self.gateway.verify_webhook_signature(delivery, None))

    def test_query_failures_can_be_injected(self) -> None:
        result = self.gateway.charge(_card(), "key-query")
        self.gateway.fail_next_queries = 1
        with self.assertRaises(GatewayError):
            self.gateway.query_status(result.external_id)
        self.assertIs(self.gateway.query_status(result.external_id).status, PaymentStatus.APPROVED)


if __name__ == "__main__":
    unittest.main()
