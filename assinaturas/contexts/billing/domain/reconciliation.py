"""Single state-transition path shared by synchronous charges and webhooks.

Provider statuses are ordered by rank (see ``PaymentStatus.rank``). A result
only moves a charge forward when its rank is strictly greater than the rank
already recorded for that charge:

* same status again      -> ``duplicate`` (no-op)
* lower rank             -> ``stale`` (no-op)
* same rank, different   -> ``conflict`` (no-op, flagged for manual review)

``refunded`` outranks every other status, so a refund after an approval is
always applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from assinaturas.contexts.billing.domain.charge import Charge, ChargePurpose
from assinaturas.contexts.billing.domain.payment import PaymentResult, PaymentStatus
from assinaturas.contexts.billing.domain.subscription import Subscription
from assinaturas.core.event_bus import (
    DomainEvent,
    PaymentConflictDetected,
    RenewalPaymentFailed,
    SubscriptionActivated,
    SubscriptionRenewed,
    SubscriptionSuspended,
)
from assinaturas.errors import InvalidTransition
from assinaturas.ui_strings import payment_status_detail_message


OUTCOME_APPLIED = "applied"
OUTCOME_RECORDED = "recorded"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_CONFLICT = "conflict"
OUTCOME_REFUSED = "refused"


@dataclass(frozen=True)
class ReconciliationOutcome:
    subscription: Subscription
    charge: Charge
    outcome: str
    events: tuple[DomainEvent, ...] = field(default_factory=tuple)
    subscription_changed: bool = False
    charge_changed: bool = False
    refusal: InvalidTransition | None = None


def _unchanged(subscription: Subscription, charge: Charge, outcome: str, events=()) -> ReconciliationOutcome:
    return ReconciliationOutcome(subscription=subscription, charge=charge, outcome=outcome, events=tuple(events))


def classify(recorded: PaymentStatus | None, incoming: PaymentStatus) -> str | None:
    """Return the no-op label for ``incoming`` or None when it moves the charge forward."""
    if recorded is None:
        return None
    if incoming is recorded:
        return OUTCOME_DUPLICATE
    if incoming.rank < recorded.rank:
        return OUTCOME_STALE
    if incoming.rank == recorded.rank:
        return OUTCOME_CONFLICT
    return None


def reconcile(
    subscription: Subscription,
    result: PaymentResult,
    charge: Charge,
    today: date,
) -> ReconciliationOutcome:
    noop = classify(charge.status, result.status)
    if noop == OUTCOME_CONFLICT:
        conflict = PaymentConflictDetected(
            tenant_id=subscription.tenant_id,
            subscription_id=int(subscription.id or 0),
            external_id=result.external_id,
            recorded_status=charge.status.value if charge.status else "",
            incoming_status=result.status.value,
        )
        return _unchanged(subscription, charge, noop, (conflict,))
    if noop is not None:
        return _unchanged(subscription, charge, noop)

    updated_charge = charge.record(result)
    if not result.status.is_final:
        return ReconciliationOutcome(
            subscription=subscription,
            charge=updated_charge,
            outcome=OUTCOME_RECORDED,
            charge_changed=True,
        )

    try:
        updated, events = _apply(subscription, result, charge, today)
    except InvalidTransition as exc:
        return ReconciliationOutcome(
            subscription=subscription,
            charge=updated_charge,
            outcome=OUTCOME_REFUSED,
            charge_changed=True,
            refusal=exc,
        )
    return ReconciliationOutcome(
        subscription=updated,
        charge=updated_charge,
        outcome=OUTCOME_APPLIED,
        events=tuple(events),
        subscription_changed=updated != subscription,
        charge_changed=True,
    )


def _apply(
    subscription: Subscription,
    result: PaymentResult,
    charge: Charge,
    today: date,
) -> tuple[Subscription, list[DomainEvent]]:
    tenant_id = subscription.tenant_id
    subscription_id = int(subscription.id or 0)
    status = result.status

    if status is PaymentStatus.APPROVED:
        if charge.purpose is ChargePurpose.RENEWAL:
            renewed = subscription.renew(
                amount=result.amount,
                external_id=result.external_id,
                billed_days=charge.billed_days,
            )
            return renewed, [
                SubscriptionRenewed(
                    tenant_id=tenant_id,
                    subscription_id=subscription_id,
                    period_end=renewed.period_end.isoformat(),
                    external_id=result.external_id,
                )
            ]
        activated = subscription.activate(
            amount=result.amount,
            external_id=result.external_id,
            payment_method=result.payment_method,
            today=today,
        )
        return activated, [
            SubscriptionActivated(
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                plan_id=activated.plan_id,
                period_end=activated.period_end.isoformat(),
                external_id=result.external_id,
            )
        ]

    if status is PaymentStatus.REFUNDED:
        reason = "Pagamento estornado."
        refunded = subscription.refund(reason=reason)
        return refunded, [SubscriptionSuspended(tenant_id=tenant_id, subscription_id=subscription_id, reason=reason)]

    reason = result.error_message or payment_status_detail_message(result.status_detail)
    if charge.purpose is ChargePurpose.INITIAL:
        rejected = subscription.reject(reason=reason)
        return rejected, [SubscriptionSuspended(tenant_id=tenant_id, subscription_id=subscription_id, reason=reason)]
    # A refused renewal or retry leaves the current period untouched; expiry
    # is still driven by the grace window.
    return subscription, [RenewalPaymentFailed(tenant_id=tenant_id, subscription_id=subscription_id, reason=reason)]
