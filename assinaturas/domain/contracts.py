from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class PaymentDetailsInput:
    payer_email: str
    payment_method: str
    card_token: str | None = None
    installments: int = 1
    payer_tax_id: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "PaymentDetailsInput":
        data = dict(payload or {})
        metadata = data.get("metadata")
        return PaymentDetailsInput(
            payer_email=str(data.get("payer_email") or data.get("email") or "").strip(),
            payment_method=str(data.get("payment_method") or "").strip(),
            card_token=str(data.get("card_token") or "").strip() or None,
            installments=data.get("installments") or 1,
            payer_tax_id=str(data.get("payer_tax_id") or data.get("cpf") or "").strip() or None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class SubscriptionCreateInput:
    plan_id: str
    billing_cycle: str = "mensal"
    payment: PaymentDetailsInput | None = None


@dataclass(frozen=True)
class RenewalInput:
    months: int = 1
    payment: PaymentDetailsInput | None = None


@dataclass(frozen=True)
class PlanChangeInput:
    plan_id: str
    billing_cycle: str | None = None
    simulate: bool = False
    payment: PaymentDetailsInput | None = None
