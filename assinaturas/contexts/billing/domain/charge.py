from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import PaymentResult, PaymentStatus


class ChargePurpose(str, Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"
    RETRY = "retry"


def build_idempotency_key(
    subscription_id: int,
    purpose: ChargePurpose,
    period_start: date,
    attempt: int = 1,
) -> str:
    """Deterministic key for one logical charge of one billed period.

    ``attempt`` only grows after the provider gave a final refusal for the
    previous key; transport failures keep reusing the same key.
    """
    base = f"sub_{int(subscription_id)}_{ChargePurpose(purpose).value}_{period_start.strftime('%Y%m%d')}"
    if attempt > 1:
        return f"{base}_{int(attempt)}"
    return base


@dataclass(frozen=True)
class Charge:
    subscription_id: int
    tenant_id: str
    purpose: ChargePurpose
    idempotency_key: str
    amount: Money
    billed_days: int
    id: int | None = None
    payment_method: str | None = None
    external_id: str | None = None
    status: PaymentStatus | None = None
    status_detail: str | None = None
    error_message: str | None = None
    attempts: int = 0
    qr_code: str | None = None
    qr_code_base64: str | None = None
    ticket_url: str | None = None
    last_checked_at: datetime | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "purpose", ChargePurpose(getattr(self.purpose, "value", self.purpose)))
        if self.status is not None and not isinstance(self.status, PaymentStatus):
            object.__setattr__(self, "status", PaymentStatus.parse(self.status))

    @property
    def is_open(self) -> bool:
        """No final answer from the provider yet."""
        return self.status is None or not self.status.is_final

    @property
    def is_refused(self) -> bool:
        return self.status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED)

    def payment_instructions(self) -> dict[str, str] | None:
        """What the payer needs to settle a pix or boleto charge, if anything."""
        instructions = {
            "qr_code": self.qr_code,
            "qr_code_base64": self.qr_code_base64,
            "ticket_url": self.ticket_url,
        }
        instructions = {key: value for key, value in instructions.items() if value}
        return instructions or None

    def record(self, result: PaymentResult) -> "Charge":
        return replace(
            self,
            external_id=result.external_id or self.external_id,
            status=result.status,
            status_detail=result.status_detail,
            error_message=result.error_message,
            payment_method=self.payment_method or result.payment_method,
            qr_code=result.qr_code or self.qr_code,
            qr_code_base64=result.qr_code_base64 or self.qr_code_base64,
            ticket_url=result.ticket_url or self.ticket_url,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "purpose": self.purpose.value,
            "idempotency_key": self.idempotency_key,
            "amount": self.amount.to_dict(),
            "billed_days": self.billed_days,
            "payment_method": self.payment_method,
            "external_id": self.external_id,
            "status": self.status.value if self.status else None,
            "status_detail": self.status_detail,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "payment_instructions": self.payment_instructions(),
            "created_at": self.created_at.isoformat() if isinstance(self.created_at, datetime) else self.created_at,
        }
