from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.errors import ValidationError


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_INSTALLMENTS = 12


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PIX = "pix"
    BOLETO = "boleto"

    @classmethod
    def parse(cls, value: object) -> "PaymentMethod":
        raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
        aliases = {"cartao": "credit_card", "cartao_credito": "credit_card", "card": "credit_card"}
        raw = aliases.get(raw, raw)
        try:
            return cls(raw)
        except ValueError as exc:
            raise ValidationError(
                code="payment_method_invalid",
                message_key="payment_method_invalid",
                payload={"field": "payment_method"},
                details=f"payment_method={value!r}",
            ) from exc


class PaymentStatus(str, Enum):
    PENDING = "pending"
    IN_PROCESS = "in_process"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_final(self) -> bool:
        return self.rank >= _STATUS_RANK[PaymentStatus.APPROVED]

    @classmethod
    def parse(cls, value: object) -> "PaymentStatus":
        raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
        try:
            return cls(raw)
        except ValueError as exc:
            raise ValidationError(
                code="payment_status_invalid",
                message_key="action_invalid",
                details=f"status={value!r}",
            ) from exc


# Total order used to decide whether a provider status is newer than the one
# already recorded for the same charge. Same-rank statuses never replace each other.
_STATUS_RANK: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.IN_PROCESS: 1,
    PaymentStatus.APPROVED: 2,
    PaymentStatus.REJECTED: 2,
    PaymentStatus.CANCELLED: 2,
    PaymentStatus.REFUNDED: 3,
}


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


CPF_DIGITS = 11
CNPJ_DIGITS = 14


def _normalize_tax_id(value: object | None) -> str | None:
    """Digits of a CPF or CNPJ; anything else is rejected instead of dropped."""
    if _safe_str(value) is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if len(digits) not in (CPF_DIGITS, CNPJ_DIGITS):
        raise _invalid("payer_tax_id_invalid", "payer_tax_id", details=f"{len(digits)} digits")
    return digits


def tax_id_type(tax_id: str) -> str:
    return "CNPJ" if len(tax_id) == CNPJ_DIGITS else "CPF"


def parse_timestamp(value: object | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _invalid(code: str, field_name: str, details: str | None = None) -> ValidationError:
    return ValidationError(code=code, message_key=code, payload={"field": field_name}, details=details)


@dataclass(frozen=True)
class PaymentRequest:
    amount: Money
    description: str
    payer_email: str
    payment_method: PaymentMethod
    card_token: str | None = None
    installments: int = 1
    payer_tax_id: str | None = None
    external_reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Money) or not self.amount.is_positive():
            raise _invalid("amount_invalid", "amount", details=f"amount={self.amount!r}")
        description = str(self.description or "").strip()
        if not description:
            raise _invalid("description_required", "description")
        email = str(self.payer_email or "").strip().lower()
        if not _EMAIL_PATTERN.match(email):
            raise _invalid("payer_email_invalid", "payer_email")
        method = PaymentMethod.parse(self.payment_method)
        token = _safe_str(self.card_token)
        if method is PaymentMethod.CREDIT_CARD and not token:
            raise _invalid("card_token_required", "card_token")
        if method is not PaymentMethod.CREDIT_CARD and token:
            raise _invalid("card_token_forbidden", "card_token")
        try:
            installments = int(self.installments)
        except (TypeError, ValueError) as exc:
            raise _invalid("installments_invalid", "installments") from exc
        if installments < 1 or installments > MAX_INSTALLMENTS:
            raise _invalid("installments_invalid", "installments", details=f"installments={installments}")
        if method is not PaymentMethod.CREDIT_CARD and installments != 1:
            raise _invalid("installments_invalid", "installments", details=f"{method.value} has no installments")

        object.__setattr__(self, "description", description[:255])
        object.__setattr__(self, "payer_email", email)
        object.__setattr__(self, "payment_method", method)
        object.__setattr__(self, "card_token", token)
        object.__setattr__(self, "installments", installments)
        object.__setattr__(self, "payer_tax_id", _normalize_tax_id(self.payer_tax_id))
        object.__setattr__(self, "external_reference", _safe_str(self.external_reference))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    def with_reference(self, external_reference: str) -> "PaymentRequest":
        if self.external_reference:
            return self
        return PaymentRequest(
            amount=self.amount,
            description=self.description,
            payer_email=self.payer_email,
            payment_method=self.payment_method,
            card_token=self.card_token,
            installments=self.installments,
            payer_tax_id=self.payer_tax_id,
            external_reference=external_reference[:256],
            metadata=self.metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount.to_dict(),
            "description": self.description,
            "payer_email": self.payer_email,
            "payment_method": self.payment_method.value,
            "has_card_token": bool(self.card_token),
            "installments": self.installments,
            "payer_tax_id": self.payer_tax_id,
            "external_reference": self.external_reference,
            "metadata": dict(self.metadata),
        }

    @staticmethod
    def from_dict(payload: dict[str, Any], *, amount: Money) -> "PaymentRequest":
        data = dict(payload or {})
        metadata = data.get("metadata")
        return PaymentRequest(
            amount=amount,
            description=str(data.get("description") or ""),
            payer_email=str(data.get("payer_email") or data.get("email") or ""),
            payment_method=data.get("payment_method") or data.get("payment_method_id") or "",
            card_token=_safe_str(data.get("card_token") or data.get("token")),
            installments=data.get("installments") or 1,
            payer_tax_id=_safe_str(data.get("payer_tax_id") or data.get("cpf")),
            external_reference=_safe_str(data.get("external_reference")),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class PaymentResult:
    external_id: str
    status: PaymentStatus
    amount: Money
    payment_method: str
    payer_email: str | None = None
    payer_tax_id: str | None = None
    status_detail: str | None = None
    error_message: str | None = None
    external_reference: str | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Pix and boleto instructions the payer needs to settle a pending charge.
    qr_code: str | None = None
    qr_code_base64: str | None = None
    ticket_url: str | None = None

    def __post_init__(self) -> None:
        external_id = _safe_str(self.external_id)
        if not external_id:
            raise ValidationError(code="payment_result_invalid", message_key="action_invalid", details="external_id")
        status = PaymentStatus.parse(self.status)
        if self.approved_at is not None and status is not PaymentStatus.APPROVED:
            raise ValidationError(
                code="payment_result_invalid",
                message_key="action_invalid",
                details=f"approved_at set for status={status.value}",
            )
        object.__setattr__(self, "external_id", external_id)
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    @property
    def is_approved(self) -> bool:
        return self.status is PaymentStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "status": self.status.value,
            "amount": self.amount.to_dict(),
            "payment_method": self.payment_method,
            "payer_email": self.payer_email,
            "payer_tax_id": self.payer_tax_id,
            "status_detail": self.status_detail,
            "error_message": self.error_message,
            "external_reference": self.external_reference,
            "created_at": _iso(self.created_at),
            "approved_at": _iso(self.approved_at),
            "metadata": dict(self.metadata),
            "qr_code": self.qr_code,
            "qr_code_base64": self.qr_code_base64,
            "ticket_url": self.ticket_url,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "PaymentResult":
        data = dict(payload or {})
        amount = data.get("amount") or {}
        if isinstance(amount, dict):
            money = Money.of(int(amount.get("amount_cents") or 0), amount.get("currency") or "BRL")
        else:
            money = Money.from_decimal(str(amount))
        status = PaymentStatus.parse(data.get("status"))
        return PaymentResult(
            external_id=str(data.get("external_id") or ""),
            status=status,
            amount=money,
            payment_method=str(data.get("payment_method") or "unknown"),
            payer_email=_safe_str(data.get("payer_email")),
            payer_tax_id=_safe_str(data.get("payer_tax_id")),
            status_detail=_safe_str(data.get("status_detail")),
            error_message=_safe_str(data.get("error_message")),
            external_reference=_safe_str(data.get("external_reference")),
            created_at=parse_timestamp(data.get("created_at")),
            approved_at=parse_timestamp(data.get("approved_at")) if status is PaymentStatus.APPROVED else None,
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
            qr_code=_safe_str(data.get("qr_code")),
            qr_code_base64=_safe_str(data.get("qr_code_base64")),
            ticket_url=_safe_str(data.get("ticket_url")),
        )
