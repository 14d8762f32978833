"""Subscription entity and its state machine.

The entity is immutable: every transition returns a new instance built with
``dataclasses.replace``. Allowed moves are listed in ``TRANSITIONS``; anything
else raises ``InvalidTransition``. Time-based checks (grace, expiry) are pure
functions of a reference date and never look at the persisted status alone.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.errors import InvalidTransition, ValidationError


FREE_PAYMENT_METHOD = "gratuito"
DEFAULT_GRACE_DAYS = 7


class SubscriptionStatus(str, Enum):
    PENDENTE = "pendente"
    ATIVA = "ativa"
    SUSPENSA = "suspensa"
    CANCELADA = "cancelada"
    EXPIRADA = "expirada"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELADA, SubscriptionStatus.EXPIRADA)


class BillingCycle(str, Enum):
    MENSAL = "mensal"
    ANUAL = "anual"

    @property
    def days(self) -> int:
        return 365 if self is BillingCycle.ANUAL else 30

    @classmethod
    def parse(cls, value: object) -> "BillingCycle":
        raw = str(getattr(value, "value", value) or "mensal").strip().lower()
        aliases = {"monthly": "mensal", "annual": "anual", "yearly": "anual"}
        try:
            return cls(aliases.get(raw, raw))
        except ValueError as exc:
            raise ValidationError(
                code="billing_cycle_invalid",
                message_key="billing_cycle_invalid",
                payload={"field": "billing_cycle"},
            ) from exc


class SubscriptionEvent(str, Enum):
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    RENEWAL_APPROVED = "renewal_approved"
    PAYMENT_REFUNDED = "payment_refunded"
    CANCEL = "cancel"
    EXPIRE = "expire"


TRANSITIONS: dict[tuple[SubscriptionStatus, SubscriptionEvent], SubscriptionStatus] = {
    (SubscriptionStatus.PENDENTE, SubscriptionEvent.PAYMENT_APPROVED): SubscriptionStatus.ATIVA,
    (SubscriptionStatus.PENDENTE, SubscriptionEvent.PAYMENT_REJECTED): SubscriptionStatus.SUSPENSA,
    (SubscriptionStatus.ATIVA, SubscriptionEvent.RENEWAL_APPROVED): SubscriptionStatus.ATIVA,
    (SubscriptionStatus.ATIVA, SubscriptionEvent.EXPIRE): SubscriptionStatus.EXPIRADA,
    (SubscriptionStatus.ATIVA, SubscriptionEvent.CANCEL): SubscriptionStatus.CANCELADA,
    (SubscriptionStatus.ATIVA, SubscriptionEvent.PAYMENT_REFUNDED): SubscriptionStatus.SUSPENSA,
    (SubscriptionStatus.SUSPENSA, SubscriptionEvent.CANCEL): SubscriptionStatus.CANCELADA,
    (SubscriptionStatus.SUSPENSA, SubscriptionEvent.PAYMENT_APPROVED): SubscriptionStatus.ATIVA,
}


def transition_target(status: SubscriptionStatus, event: SubscriptionEvent) -> SubscriptionStatus:
    target = TRANSITIONS.get((status, event))
    if target is None:
        raise InvalidTransition(
            details=f"{event.value} not allowed from {status.value}",
            payload={"status": status.value, "event": event.value},
        )
    return target


def _as_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _append_note(current: str | None, note: str | None) -> str | None:
    note = str(note or "").strip()
    if not note:
        return current
    if not current:
        return note
    return f"{current}\n{note}"


@dataclass(frozen=True)
class Subscription:
    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    period_start: date
    period_end: date
    amount: Money
    id: int | None = None
    payment_method: str | None = None
    external_transaction_id: str | None = None
    grace_period_days: int = DEFAULT_GRACE_DAYS
    notes: str | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", SubscriptionStatus(getattr(self.status, "value", self.status)))
        object.__setattr__(self, "billing_cycle", BillingCycle.parse(self.billing_cycle))
        object.__setattr__(self, "period_start", _as_date(self.period_start))
        object.__setattr__(self, "period_end", _as_date(self.period_end))
        if self.period_end < self.period_start:
            raise ValidationError(code="subscription_invalid", details="period_end before period_start")
        if self.amount.is_negative():
            raise ValidationError(code="subscription_invalid", details="negative amount")
        if int(self.grace_period_days) < 0:
            raise ValidationError(code="subscription_invalid", details="negative grace period")
        if (
            self.status is SubscriptionStatus.ATIVA
            and not self.external_transaction_id
            and self.payment_method != FREE_PAYMENT_METHOD
        ):
            raise ValidationError(code="subscription_invalid", details="ativa requires an approved charge")

    @classmethod
    def start(
        cls,
        *,
        tenant_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        amount: Money,
        today: date,
        payment_method: str | None = None,
        grace_period_days: int = DEFAULT_GRACE_DAYS,
        notes: str | None = None,
    ) -> "Subscription":
        """New subscription awaiting its first payment confirmation."""
        cycle = BillingCycle.parse(billing_cycle)
        return cls(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=SubscriptionStatus.PENDENTE,
            billing_cycle=cycle,
            period_start=today,
            period_end=today + timedelta(days=cycle.days),
            amount=amount,
            payment_method=payment_method,
            grace_period_days=grace_period_days,
            notes=notes,
        )

    @classmethod
    def start_free(
        cls,
        *,
        tenant_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        today: date,
        currency: str = "BRL",
        grace_period_days: int = DEFAULT_GRACE_DAYS,
        notes: str | None = None,
    ) -> "Subscription":
        cycle = BillingCycle.parse(billing_cycle)
        return cls(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ATIVA,
            billing_cycle=cycle,
            period_start=today,
            period_end=today + timedelta(days=cycle.days),
            amount=Money.zero(currency),
            payment_method=FREE_PAYMENT_METHOD,
            grace_period_days=grace_period_days,
            notes=notes,
        )

    # -- time-based predicates ---------------------------------------------

    def grace_end(self) -> date:
        return self.period_end + timedelta(days=int(self.grace_period_days))

    def is_expired(self, today: date) -> bool:
        return today > self.grace_end()

    def is_in_grace(self, today: date) -> bool:
        return self.period_end < today <= self.grace_end()

    def has_access(self, today: date) -> bool:
        return self.status is SubscriptionStatus.ATIVA and not self.is_expired(today)

    def days_remaining(self, today: date) -> int:
        return max(0, (self.period_end - today).days)

    def days_remaining_with_grace(self, today: date) -> int:
        return max(0, (self.grace_end() - today).days)

    def duration_days(self) -> int:
        return (self.period_end - self.period_start).days

    def effective_status(self, today: date) -> SubscriptionStatus:
        if self.status is SubscriptionStatus.ATIVA and self.is_expired(today):
            return SubscriptionStatus.EXPIRADA
        return self.status

    # -- transitions -------------------------------------------------------

    def activate(
        self,
        *,
        amount: Money,
        external_id: str,
        payment_method: str | None,
        today: date,
    ) -> "Subscription":
        """First approval (pendente) or successful retry (suspensa); the period restarts today."""
        target = transition_target(self.status, SubscriptionEvent.PAYMENT_APPROVED)
        if self.status is SubscriptionStatus.PENDENTE and amount != self.amount:
            raise InvalidTransition(
                code="payment_amount_mismatch",
                details=f"approved {amount.amount} {amount.currency}, expected {self.amount.amount} {self.amount.currency}",
                payload={"status": self.status.value, "event": SubscriptionEvent.PAYMENT_APPROVED.value},
            )
        return replace(
            self,
            status=target,
            period_start=today,
            period_end=today + timedelta(days=self.billing_cycle.days),
            amount=amount,
            payment_method=payment_method or self.payment_method,
            external_transaction_id=external_id,
        )

    def renew(self, *, amount: Money, external_id: str | None, billed_days: int) -> "Subscription":
        target = transition_target(self.status, SubscriptionEvent.RENEWAL_APPROVED)
        if billed_days <= 0:
            raise ValidationError(code="renewal_months_invalid", message_key="renewal_months_invalid")
        return replace(
            self,
            status=target,
            period_end=self.period_end + timedelta(days=int(billed_days)),
            amount=amount,
            external_transaction_id=external_id or self.external_transaction_id,
        )

    def reject(self, *, reason: str | None = None) -> "Subscription":
        target = transition_target(self.status, SubscriptionEvent.PAYMENT_REJECTED)
        return replace(self, status=target, notes=_append_note(self.notes, reason))

    def refund(self, *, reason: str | None = None) -> "Subscription":
        target = transition_target(self.status, SubscriptionEvent.PAYMENT_REFUNDED)
        return replace(self, status=target, notes=_append_note(self.notes, reason or "Pagamento estornado."))

    def cancel(self, *, reason: str | None = None) -> "Subscription":
        target = transition_target(self.status, SubscriptionEvent.CANCEL)
        return replace(self, status=target, notes=_append_note(self.notes, reason))

    def expire(self, today: date) -> "Subscription":
        target = transition_target(self.status, SubscriptionEvent.EXPIRE)
        if not self.is_expired(today):
            raise InvalidTransition(
                code="subscription_not_expired",
                details=f"grace ends {self.grace_end().isoformat()}",
                payload={"status": self.status.value, "event": SubscriptionEvent.EXPIRE.value},
            )
        return replace(self, status=target)

    def apply(
        self,
        event: SubscriptionEvent,
        *,
        today: date,
        amount: Money | None = None,
        external_id: str | None = None,
        payment_method: str | None = None,
        billed_days: int | None = None,
        reason: str | None = None,
    ) -> "Subscription":
        if event is SubscriptionEvent.PAYMENT_APPROVED:
            return self.activate(
                amount=amount or self.amount,
                external_id=external_id or "",
                payment_method=payment_method,
                today=today,
            )
        if event is SubscriptionEvent.RENEWAL_APPROVED:
            return self.renew(
                amount=amount or self.amount,
                external_id=external_id or "",
                billed_days=billed_days or self.billing_cycle.days,
            )
        if event is SubscriptionEvent.PAYMENT_REJECTED:
            return self.reject(reason=reason)
        if event is SubscriptionEvent.PAYMENT_REFUNDED:
            return self.refund(reason=reason)
        if event is SubscriptionEvent.CANCEL:
            return self.cancel(reason=reason)
        return self.expire(today)

    def with_note(self, note: str) -> "Subscription":
        return replace(self, notes=_append_note(self.notes, note))

    def to_dict(self, today: date | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "billing_cycle": self.billing_cycle.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "amount": self.amount.to_dict(),
            "payment_method": self.payment_method,
            "external_transaction_id": self.external_transaction_id,
            "grace_period_days": self.grace_period_days,
            "notes": self.notes,
            "version": self.version,
        }
        if today is not None:
            payload.update(
                {
                    "effective_status": self.effective_status(today).value,
                    "has_access": self.has_access(today),
                    "in_grace": self.status is SubscriptionStatus.ATIVA and self.is_in_grace(today),
                    "days_remaining": self.days_remaining(today),
                    "days_remaining_with_grace": self.days_remaining_with_grace(today),
                }
            )
        return payload
