from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.errors import ValidationError


ANNUAL_MONTHS_CHARGED = 10


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price_monthly: Money
    price_annual: Money | None = None
    feature_limits: dict[str, Any] = field(default_factory=dict)
    active: bool = True

    @property
    def is_free(self) -> bool:
        return self.price_monthly.is_zero()

    def annual_price(self) -> Money:
        """Annual price; plans without one pay ten months for twelve."""
        if self.price_annual is not None:
            return self.price_annual
        return self.price_monthly * ANNUAL_MONTHS_CHARGED

    def price_for(self, billing_cycle: str, months: int = 1) -> Money:
        cycle = str(getattr(billing_cycle, "value", billing_cycle) or "").strip().lower()
        if cycle == "anual":
            return self.annual_price()
        if cycle != "mensal":
            raise ValidationError(code="billing_cycle_invalid", message_key="billing_cycle_invalid")
        if isinstance(months, bool) or not isinstance(months, int) or months < 1 or months > 12:
            raise ValidationError(code="renewal_months_invalid", message_key="renewal_months_invalid")
        return self.price_monthly * months

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price_monthly": self.price_monthly.to_dict(),
            "price_annual": self.annual_price().to_dict(),
            "feature_limits": dict(self.feature_limits),
            "active": self.active,
            "is_free": self.is_free,
        }


class PlanReadModel(ABC):
    """Read-only view of the tenant/plan catalogue. The engine never writes to it."""

    @abstractmethod
    def get_plan(self, tenant_id: str, plan_id: str) -> Plan | None:
        raise NotImplementedError

    @abstractmethod
    def list_plans(self, tenant_id: str) -> list[Plan]:
        raise NotImplementedError

    @abstractmethod
    def get_tenant_billing_email(self, tenant_id: str) -> str | None:
        raise NotImplementedError
