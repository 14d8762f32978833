from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import total_ordering
from typing import Any

from babel.numbers import format_currency, get_currency_precision
from moneyed import get_currency
from moneyed.classes import CurrencyDoesNotExist

from assinaturas.errors import ValidationError


DEFAULT_CURRENCY = "BRL"
DEFAULT_LOCALE = "pt_BR"


def _normalize_currency(currency: str | None) -> str:
    code = str(currency or DEFAULT_CURRENCY).strip().upper()
    try:
        return get_currency(code).code
    except CurrencyDoesNotExist as exc:
        raise ValidationError(
            code="currency_invalid",
            message_key="amount_invalid",
            details=f"currency={currency!r}",
        ) from exc


def _minor_units(currency: str) -> Decimal:
    """Minor units per major unit: 100 for BRL, 1 for JPY."""
    return Decimal(10) ** get_currency_precision(currency)


@total_ordering
@dataclass(frozen=True)
class Money:
    """Fixed-point amount in minor units (centavos for BRL)."""

    amount: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValidationError(
                code="amount_invalid",
                message_key="amount_invalid",
                details=f"Money amount must be int minor units, got {type(self.amount).__name__}",
            )
        object.__setattr__(self, "currency", _normalize_currency(self.currency))

    @classmethod
    def of(cls, minor_units: int, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(minor_units, currency)

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: Decimal | int | str, currency: str = DEFAULT_CURRENCY) -> "Money":
        """Build from a major-unit value ("99.90", Decimal("99.90") or 99).

        Floats are refused: binary fractions cannot represent centavos exactly.
        """
        if isinstance(value, float):
            raise ValidationError(
                code="amount_invalid",
                message_key="amount_invalid",
                details="Money cannot be built from float; use Decimal or str.",
            )
        try:
            major = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
        except InvalidOperation as exc:
            raise ValidationError(
                code="amount_invalid",
                message_key="amount_invalid",
                details=f"value={value!r}",
            ) from exc
        if not major.is_finite():
            raise ValidationError(code="amount_invalid", message_key="amount_invalid", details=f"value={value!r}")
        code = _normalize_currency(currency)
        minor = (major * _minor_units(code)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return cls(int(minor), code)

    def _require_same_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Money operand expected, got {type(other).__name__}")
        if other.currency != self.currency:
            raise ValidationError(
                code="currency_mismatch",
                message_key="currency_mismatch",
                details=f"{self.currency} != {other.currency}",
            )

    def __add__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: int) -> "Money":
        if isinstance(factor, bool) or not isinstance(factor, int):
            return NotImplemented
        return Money(self.amount * factor, self.currency)

    __rmul__ = __mul__

    def __lt__(self, other: "Money") -> bool:
        self._require_same_currency(other)
        return self.amount < other.amount

    def prorate(self, numerator: int, denominator: int) -> "Money":
        """Return ``self * numerator / denominator`` rounded half up to a whole minor unit."""
        if denominator <= 0:
            return Money.zero(self.currency)
        share = (Decimal(self.amount) * Decimal(int(numerator))) / Decimal(int(denominator))
        return Money(int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP)), self.currency)

    def max(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return self if self.amount >= other.amount else other

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_decimal(self) -> Decimal:
        factor = _minor_units(self.currency)
        return (Decimal(self.amount) / factor).quantize(Decimal(1) / factor)

    def format(self, locale: str = DEFAULT_LOCALE) -> str:
        return format_currency(self.to_decimal(), self.currency, locale=locale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount_cents": self.amount,
            "amount": str(self.to_decimal()),
            "currency": self.currency,
            "formatted": self.format(),
        }

    def __str__(self) -> str:
        return self.format()
