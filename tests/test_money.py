import unittest
from decimal import Decimal

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.errors import ValidationError


class MoneyTest(unittest.TestCase):
    def test_from_decimal_uses_minor_units(self) -> None:
        self.assertEqual(Money.from_decimal("99.90").amount, 9990)
        self.assertEqual(Money.from_decimal(Decimal("0.005")).amount, 1)
        self.assertEqual(Money.from_decimal(199).amount, 19900)

    def test_float_is_refused(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            Money.from_decimal(99.9)
        self.assertEqual(ctx.exception.code, "amount_invalid")

        with self.assertRaises(ValidationError):
            Money(99.9)  # type: ignore[arg-type]

    def test_arithmetic_requires_same_currency(self) -> None:
        total = Money.of(9990) + Money.of(10)
        self.assertEqual(total, Money.of(10000))
        self.assertEqual(Money.of(500) - Money.of(200), Money.of(300))
        self.assertEqual(Money.of(9990) * 12, Money.of(119880))

        with self.assertRaises(ValidationError) as ctx:
            Money.of(100, "BRL") + Money.of(100, "USD")
        self.assertEqual(ctx.exception.code, "currency_mismatch")

    def test_prorate_rounds_half_up(self) -> None:
        self.assertEqual(Money.of(9990).prorate(15, 30), Money.of(4995))
        self.assertEqual(Money.of(100).prorate(1, 3), Money.of(33))
        self.assertEqual(Money.of(200).prorate(1, 3), Money.of(67))
        self.assertEqual(Money.of(100).prorate(1, 0), Money.zero())

    def test_ordering_and_max(self) -> None:
        self.assertLess(Money.of(1), Money.of(2))
        self.assertEqual(Money.of(-50).max(Money.zero()), Money.zero())

    def test_format_and_dict(self) -> None:
        self.assertEqual(Money.of(123456).format(), "R$\xa01.234,56")
        self.assertEqual(Money.of(-990).format(), "-R$\xa09,90")
        self.assertEqual(Money.of(123456, "USD").format(), "US$\xa01.234,56")
        payload = Money.of(9990).to_dict()
        self.assertEqual(payload["amount_cents"], 9990)
        self.assertEqual(payload["amount"], "99.90")
        self.assertEqual(payload["currency"], "BRL")

    def test_currency_code_is_validated(self) -> None:
        self.assertEqual(Money.of(1, "brl").currency, "BRL")
        with self.assertRaises(ValidationError):
            Money.of(1, "REAL")
        with self.assertRaises(ValidationError) as ctx:
            Money.of(123456, "XYZ")
        self.assertEqual(ctx.exception.code, "currency_invalid")

    def test_minor_units_follow_currency_precision(self) -> None:
        yen = Money.from_decimal("1234", "JPY")
        self.assertEqual(yen.amount, 1234)
        self.assertEqual(yen.to_decimal(), Decimal("1234"))
        self.assertEqual(yen.to_dict()["amount"], "1234")
        self.assertEqual(Money.from_decimal("12.34", "BRL").amount, 1234)


if __name__ == "__main__":
    unittest.main()
