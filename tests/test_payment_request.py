import unittest
from datetime import datetime, timezone

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import (
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
)
from assinaturas.errors import ValidationError


def _request(**overrides) -> PaymentRequest:
    attrs = {
        "amount": Money.of(9990),
        "description": "Assinatura Basico (mensal)",
        "payer_email": "Financeiro@Empresa.com.br",
        "payment_method": "credit_card",
        "card_token": "tok_approved",
    }
    attrs.update(overrides)
    return PaymentRequest(**attrs)


class PaymentRequestTest(unittest.TestCase):
    def test_valid_request_is_normalized(self) -> None:
        request = _request(payer_tax_id="123.456.789-09")
        self.assertIs(request.payment_method, PaymentMethod.CREDIT_CARD)
        self.assertEqual(request.payer_email, "financeiro@empresa.com.br")
        self.assertEqual(request.payer_tax_id, "12345678909")
        self.assertTrue(request.to_dict()["has_card_token"])

    def test_credit_card_without_token_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _request(card_token=None)
        self.assertEqual(ctx.exception.code, "card_token_required")
        self.assertEqual(ctx.exception.http_status, 400)

    def test_pix_refuses_card_token_and_installments(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _request(payment_method="pix", card_token="tok_approved")
        self.assertEqual(ctx.exception.code, "card_token_forbidden")

        with self.assertRaises(ValidationError) as ctx:
            _request(payment_method="pix", card_token=None, installments=3)
        self.assertEqual(ctx.exception.code, "installments_invalid")

    def test_invalid_fields(self) -> None:
        cases = [
            ({"amount": Money.zero()}, "amount_invalid"),
            ({"description": "  "}, "description_required"),
            ({"payer_email": "sem-arroba"}, "payer_email_invalid"),
            ({"installments": 13}, "installments_invalid"),
            ({"payment_method": "cheque"}, "payment_method_invalid"),
        ]
        for overrides, code in cases:
            with self.subTest(code=code):
                with self.assertRaises(ValidationError) as ctx:
                    _request(**overrides)
                self.assertEqual(ctx.exception.code, code)

    def test_tax_id_accepts_cpf_and_cnpj_only(self) -> None:
        self.assertEqual(_request(payer_tax_id="11.222.333/0001-81").payer_tax_id, "11222333000181")
        self.assertIsNone(_request(payer_tax_id="  ").payer_tax_id)
        for value in ("123.456.789", "1234567890123", "123456789012345"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError) as ctx:
                    _request(payer_tax_id=value)
                self.assertEqual(ctx.exception.code, "payer_tax_id_invalid")
                self.assertEqual(ctx.exception.payload, {"field": "payer_tax_id"})

    def test_with_reference_keeps_existing_reference(self) -> None:
        request = _request()
        referenced = request.with_reference("sub_1_initial_20261018")
        self.assertEqual(referenced.external_reference, "sub_1_initial_20261018")
        self.assertIs(referenced.with_reference("other"), referenced)


class PaymentStatusTest(unittest.TestCase):
    def test_rank_order(self) -> None:
        self.assertLess(PaymentStatus.PENDING.rank, PaymentStatus.IN_PROCESS.rank)
        self.assertLess(PaymentStatus.IN_PROCESS.rank, PaymentStatus.APPROVED.rank)
        self.assertEqual(PaymentStatus.APPROVED.rank, PaymentStatus.REJECTED.rank)
        self.assertGreater(PaymentStatus.REFUNDED.rank, PaymentStatus.APPROVED.rank)
        self.assertFalse(PaymentStatus.IN_PROCESS.is_final)
        self.assertTrue(PaymentStatus.CANCELLED.is_final)

    def test_result_rejects_approved_at_for_non_approved_status(self) -> None:
        with self.assertRaises(ValidationError):
            PaymentResult(
                external_id="pay_1",
                status=PaymentStatus.PENDING,
                amount=Money.of(9990),
                payment_method="pix",
                approved_at=datetime.now(timezone.utc),
            )

    def test_result_round_trips_through_dict(self) -> None:
        result = PaymentResult(
            external_id="pay_1",
            status="approved",
            amount=Money.of(9990),
            payment_method="visa",
            approved_at=datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc),
        )
        restored = PaymentResult.from_dict(result.to_dict())
        self.assertEqual(restored.status, PaymentStatus.APPROVED)
        self.assertEqual(restored.amount, Money.of(9990))
        self.assertEqual(restored.approved_at, result.approved_at)


if __name__ == "__main__":
    unittest.main()
