import unittest

from assinaturas.contexts.billing.infrastructure.webhook_signature import (
    compute_signature,
    parse_signature_header,
    sign_payload,
    verify_signature,
)


PAYLOAD = {"id": "evt_1", "type": "payment", "data": {"id": "123456"}}


class WebhookSignatureTest(unittest.TestCase):
    def test_signed_payload_verifies(self) -> None:
        header = sign_payload(PAYLOAD, "segredo", timestamp=1_760_000_000)
        self.assertEqual(header, f"sha256={compute_signature('123456', '1760000000', 'segredo')},ts=1760000000")
        self.assertTrue(verify_signature(PAYLOAD, header, "segredo"))

    def test_wrong_secret_or_other_payment_fails(self) -> None:
        header = sign_payload(PAYLOAD, "segredo", timestamp=1_760_000_000)
        self.assertFalse(verify_signature(PAYLOAD, header, "outro"))
        other = {"type": "payment", "data": {"id": "999"}}
        self.assertFalse(verify_signature(other, header, "segredo"))

    def test_tolerance_window(self) -> None:
        header = sign_payload(PAYLOAD, "segredo", timestamp=1_000)
        self.assertTrue(verify_signature(PAYLOAD, header, "segredo", tolerance_seconds=300, now=1_200))
        self.assertFalse(verify_signature(PAYLOAD, header, "segredo", tolerance_seconds=300, now=2_000))

    def test_unsigned_deliveries_need_explicit_opt_in(self) -> None:
        self.assertFalse(verify_signature(PAYLOAD, None, "segredo"))
        self.assertTrue(verify_signature(PAYLOAD, None, "segredo", allow_unsigned=True))
        self.assertFalse(verify_signature({"type": "payment"}, None, "segredo", allow_unsigned=True))

    def test_header_parsing(self) -> None:
        self.assertEqual(parse_signature_header("ts=10,v1=abc"), ("abc", "10"))
        self.assertIsNone(parse_signature_header("sha256=abc"))
        self.assertIsNone(parse_signature_header(None))


if __name__ == "__main__":
    unittest.main()
