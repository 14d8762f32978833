import unittest
from datetime import date, datetime, timedelta, timezone

from assinaturas.contexts.billing.domain.charge import Charge, ChargePurpose, build_idempotency_key
from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import PaymentResult, PaymentStatus
from assinaturas.contexts.billing.domain.reconciliation import (
    OUTCOME_APPLIED,
    OUTCOME_CONFLICT,
    OUTCOME_DUPLICATE,
    OUTCOME_RECORDED,
    OUTCOME_REFUSED,
    OUTCOME_STALE,
    reconcile,
)
from assinaturas.contexts.billing.domain.subscription import BillingCycle, Subscription, SubscriptionStatus
from assinaturas.core import (
    PaymentConflictDetected,
    RenewalPaymentFailed,
    SubscriptionActivated,
    SubscriptionRenewed,
    SubscriptionSuspended,
)


TODAY = date(2026, 10, 18)


def _pending() -> Subscription:
    return Subscription(
        id=7,
        tenant_id="tenant-a",
        plan_id="basico",
        status=SubscriptionStatus.PENDENTE,
        billing_cycle=BillingCycle.MENSAL,
        period_start=TODAY,
        period_end=TODAY + timedelta(days=30),
        amount=Money.of(9990),
        payment_method="credit_card",
    )


def _active() -> Subscription:
    return Subscription(
        id=7,
        tenant_id="tenant-a",
        plan_id="basico",
        status=SubscriptionStatus.ATIVA,
        billing_cycle=BillingCycle.MENSAL,
        period_start=TODAY - timedelta(days=25),
        period_end=TODAY + timedelta(days=5),
        amount=Money.of(9990),
        payment_method="credit_card",
        external_transaction_id="pay_old",
    )


def _charge(purpose: ChargePurpose = ChargePurpose.INITIAL, billed_days: int = 30) -> Charge:
    return Charge(
        id=11,
        subscription_id=7,
        tenant_id="tenant-a",
        purpose=purpose,
        idempotency_key=build_idempotency_key(7, purpose, TODAY),
        amount=Money.of(9990),
        billed_days=billed_days,
    )


def _result(status: PaymentStatus, external_id: str = "pay_1") -> PaymentResult:
    return PaymentResult(
        external_id=external_id,
        status=status,
        amount=Money.of(9990),
        payment_method="visa",
        status_detail="cc_rejected_insufficient_amount" if status is PaymentStatus.REJECTED else None,
        approved_at=datetime(2026, 10, 18, 12, tzinfo=timezone.utc) if status is PaymentStatus.APPROVED else None,
    )


def _fold(subscription: Subscription, charge: Charge, statuses: list[PaymentStatus]):
    outcomes = []
    for status in statuses:
        outcome = reconcile(subscription, _result(status), charge, TODAY)
        subscription, charge = outcome.subscription, outcome.charge
        outcomes.append(outcome)
    return subscription, charge, outcomes


class ReconcileTest(unittest.TestCase):
    def test_pending_then_approved_converges_with_duplicate_approvals(self) -> None:
        first, first_charge, _ = _fold(_pending(), _charge(), [PaymentStatus.PENDING, PaymentStatus.APPROVED])
        second, second_charge, outcomes = _fold(_pending(), _charge(), [PaymentStatus.APPROVED, PaymentStatus.APPROVED])

        self.assertEqual(first, second)
        self.assertEqual(first_charge, second_charge)
        self.assertIs(first.status, SubscriptionStatus.ATIVA)
        self.assertEqual(first.period_end, TODAY + timedelta(days=30))
        self.assertEqual(first.external_transaction_id, "pay_1")
        self.assertEqual([item.outcome for item in outcomes], [OUTCOME_APPLIED, OUTCOME_DUPLICATE])
        self.assertEqual(outcomes[1].events, ())

    def test_pending_is_recorded_without_touching_subscription(self) -> None:
        outcome = reconcile(_pending(), _result(PaymentStatus.IN_PROCESS), _charge(), TODAY)
        self.assertEqual(outcome.outcome, OUTCOME_RECORDED)
        self.assertTrue(outcome.charge_changed)
        self.assertFalse(outcome.subscription_changed)
        self.assertIs(outcome.charge.status, PaymentStatus.IN_PROCESS)
        self.assertEqual(outcome.charge.external_id, "pay_1")

    def test_stale_pending_after_approval_is_a_no_op(self) -> None:
        subscription, charge, outcomes = _fold(
            _pending(),
            _charge(),
            [PaymentStatus.APPROVED, PaymentStatus.PENDING],
        )
        self.assertEqual(outcomes[1].outcome, OUTCOME_STALE)
        self.assertFalse(outcomes[1].charge_changed)
        self.assertIs(subscription.status, SubscriptionStatus.ATIVA)
        self.assertIs(charge.status, PaymentStatus.APPROVED)

    def test_same_rank_disagreement_is_flagged_as_conflict(self) -> None:
        subscription, charge, outcomes = _fold(
            _pending(),
            _charge(),
            [PaymentStatus.APPROVED, PaymentStatus.REJECTED],
        )
        conflict = outcomes[1]
        self.assertEqual(conflict.outcome, OUTCOME_CONFLICT)
        self.assertIs(subscription.status, SubscriptionStatus.ATIVA)
        self.assertIs(charge.status, PaymentStatus.APPROVED)
        self.assertEqual(len(conflict.events), 1)
        event = conflict.events[0]
        self.assertIsInstance(event, PaymentConflictDetected)
        self.assertEqual(event.recorded_status, "approved")
        self.assertEqual(event.incoming_status, "rejected")

    def test_refund_after_approval_suspends(self) -> None:
        subscription, charge, outcomes = _fold(
            _pending(),
            _charge(),
            [PaymentStatus.APPROVED, PaymentStatus.REFUNDED],
        )
        self.assertIs(subscription.status, SubscriptionStatus.SUSPENSA)
        self.assertIs(charge.status, PaymentStatus.REFUNDED)
        self.assertIsInstance(outcomes[1].events[0], SubscriptionSuspended)

    def test_initial_rejection_suspends_with_reason(self) -> None:
        outcome = reconcile(_pending(), _result(PaymentStatus.REJECTED), _charge(), TODAY)
        self.assertEqual(outcome.outcome, OUTCOME_APPLIED)
        self.assertIs(outcome.subscription.status, SubscriptionStatus.SUSPENSA)
        self.assertIsInstance(outcome.events[0], SubscriptionSuspended)
        self.assertTrue(outcome.events[0].reason)

    def test_approved_renewal_extends_period(self) -> None:
        active = _active()
        outcome = reconcile(active, _result(PaymentStatus.APPROVED, "pay_2"), _charge(ChargePurpose.RENEWAL, 60), TODAY)
        self.assertEqual(outcome.outcome, OUTCOME_APPLIED)
        self.assertEqual(outcome.subscription.period_end, active.period_end + timedelta(days=60))
        self.assertEqual(outcome.subscription.external_transaction_id, "pay_2")
        self.assertIsInstance(outcome.events[0], SubscriptionRenewed)

    def test_rejected_renewal_keeps_current_period(self) -> None:
        active = _active()
        outcome = reconcile(active, _result(PaymentStatus.REJECTED), _charge(ChargePurpose.RENEWAL), TODAY)
        self.assertIs(outcome.subscription.status, SubscriptionStatus.ATIVA)
        self.assertEqual(outcome.subscription.period_end, active.period_end)
        self.assertFalse(outcome.subscription_changed)
        self.assertIsInstance(outcome.events[0], RenewalPaymentFailed)

    def test_approval_for_cancelled_subscription_is_recorded_but_refused(self) -> None:
        cancelled = _active().cancel(reason="Cancelada a pedido do cliente.")
        outcome = reconcile(cancelled, _result(PaymentStatus.APPROVED), _charge(), TODAY)
        self.assertEqual(outcome.outcome, OUTCOME_REFUSED)
        self.assertIs(outcome.subscription.status, SubscriptionStatus.CANCELADA)
        self.assertTrue(outcome.charge_changed)
        self.assertIs(outcome.charge.status, PaymentStatus.APPROVED)
        self.assertIsNotNone(outcome.refusal)
        self.assertEqual(outcome.refusal.http_status, 409)

    def test_activation_event_carries_plan_and_period(self) -> None:
        outcome = reconcile(_pending(), _result(PaymentStatus.APPROVED), _charge(), TODAY)
        event = outcome.events[0]
        self.assertIsInstance(event, SubscriptionActivated)
        self.assertEqual(event.plan_id, "basico")
        self.assertEqual(event.period_end, (TODAY + timedelta(days=30)).isoformat())


class IdempotencyKeyTest(unittest.TestCase):
    def test_key_is_deterministic_per_period_and_attempt(self) -> None:
        key = build_idempotency_key(7, ChargePurpose.RENEWAL, date(2026, 11, 17))
        self.assertEqual(key, "sub_7_renewal_20261117")
        self.assertEqual(build_idempotency_key(7, "renewal", date(2026, 11, 17)), key)
        self.assertEqual(build_idempotency_key(7, ChargePurpose.RENEWAL, date(2026, 11, 17), 2), f"{key}_2")


if __name__ == "__main__":
    unittest.main()
