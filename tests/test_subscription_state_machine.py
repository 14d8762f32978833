import unittest
from datetime import date, timedelta

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.subscription import (
    FREE_PAYMENT_METHOD,
    TRANSITIONS,
    BillingCycle,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from assinaturas.errors import InvalidTransition, ValidationError


TODAY = date(2026, 10, 18)


def _subscription(status: SubscriptionStatus, *, period_end: date | None = None, grace_days: int = 7) -> Subscription:
    end = period_end or (TODAY + timedelta(days=10))
    return Subscription(
        id=1,
        tenant_id="tenant-a",
        plan_id="basico",
        status=status,
        billing_cycle=BillingCycle.MENSAL,
        period_start=end - timedelta(days=30),
        period_end=end,
        amount=Money.of(9990),
        payment_method="credit_card",
        external_transaction_id="pay_1" if status is not SubscriptionStatus.PENDENTE else None,
        grace_period_days=grace_days,
    )


class SubscriptionStateMachineTest(unittest.TestCase):
    def test_every_status_event_pair_is_either_allowed_or_refused(self) -> None:
        expired_end = TODAY - timedelta(days=30)
        for status in SubscriptionStatus:
            for event in SubscriptionEvent:
                with self.subTest(status=status.value, event=event.value):
                    subscription = _subscription(
                        status,
                        period_end=expired_end if event is SubscriptionEvent.EXPIRE else None,
                    )
                    target = TRANSITIONS.get((status, event))
                    if target is None:
                        with self.assertRaises(InvalidTransition) as ctx:
                            subscription.apply(event, today=TODAY, external_id="pay_2", reason="teste")
                        self.assertEqual(ctx.exception.http_status, 409)
                        self.assertEqual(ctx.exception.payload["status"], status.value)
                        self.assertEqual(ctx.exception.payload["event"], event.value)
                        continue
                    moved = subscription.apply(event, today=TODAY, external_id="pay_2", reason="teste")
                    self.assertIs(moved.status, target)
                    self.assertIs(subscription.status, status)

    def test_terminal_statuses_have_no_outgoing_transitions(self) -> None:
        for status, _event in TRANSITIONS:
            self.assertFalse(status.is_terminal)

    def test_activation_restarts_the_period(self) -> None:
        pending = Subscription.start(
            tenant_id="tenant-a",
            plan_id="basico",
            billing_cycle="mensal",
            amount=Money.of(9990),
            today=TODAY - timedelta(days=2),
        )
        active = pending.activate(amount=Money.of(9990), external_id="pay_9", payment_method="visa", today=TODAY)
        self.assertIs(active.status, SubscriptionStatus.ATIVA)
        self.assertEqual(active.period_start, TODAY)
        self.assertEqual(active.period_end, TODAY + timedelta(days=30))
        self.assertEqual(active.external_transaction_id, "pay_9")

    def test_activation_with_different_amount_is_refused(self) -> None:
        pending = _subscription(SubscriptionStatus.PENDENTE)
        with self.assertRaises(InvalidTransition) as ctx:
            pending.activate(amount=Money.of(100), external_id="pay_9", payment_method="visa", today=TODAY)
        self.assertEqual(ctx.exception.code, "payment_amount_mismatch")

    def test_renewal_extends_from_current_period_end(self) -> None:
        active = _subscription(SubscriptionStatus.ATIVA)
        renewed = active.renew(amount=Money.of(9990), external_id="pay_2", billed_days=60)
        self.assertEqual(renewed.period_end, active.period_end + timedelta(days=60))
        self.assertEqual(renewed.external_transaction_id, "pay_2")

        same_charge = active.renew(amount=Money.of(9990), external_id=None, billed_days=30)
        self.assertEqual(same_charge.external_transaction_id, "pay_1")

    def test_active_requires_an_approved_charge_unless_free(self) -> None:
        with self.assertRaises(ValidationError):
            Subscription(
                tenant_id="tenant-a",
                plan_id="basico",
                status=SubscriptionStatus.ATIVA,
                billing_cycle=BillingCycle.MENSAL,
                period_start=TODAY,
                period_end=TODAY + timedelta(days=30),
                amount=Money.of(9990),
                payment_method="credit_card",
            )
        free = Subscription.start_free(
            tenant_id="tenant-a",
            plan_id="gratuito",
            billing_cycle=BillingCycle.MENSAL,
            today=TODAY,
        )
        self.assertIs(free.status, SubscriptionStatus.ATIVA)
        self.assertEqual(free.payment_method, FREE_PAYMENT_METHOD)
        self.assertTrue(free.amount.is_zero())


class GracePeriodTest(unittest.TestCase):
    def test_three_days_past_end_is_still_in_grace(self) -> None:
        subscription = _subscription(SubscriptionStatus.ATIVA, period_end=TODAY - timedelta(days=3))
        self.assertFalse(subscription.is_expired(TODAY))
        self.assertTrue(subscription.is_in_grace(TODAY))
        self.assertTrue(subscription.has_access(TODAY))
        self.assertIs(subscription.effective_status(TODAY), SubscriptionStatus.ATIVA)
        self.assertEqual(subscription.days_remaining(TODAY), 0)
        self.assertEqual(subscription.days_remaining_with_grace(TODAY), 4)
        with self.assertRaises(InvalidTransition) as ctx:
            subscription.expire(TODAY)
        self.assertEqual(ctx.exception.code, "subscription_not_expired")

    def test_eight_days_past_end_is_expired(self) -> None:
        subscription = _subscription(SubscriptionStatus.ATIVA, period_end=TODAY - timedelta(days=8))
        self.assertTrue(subscription.is_expired(TODAY))
        self.assertFalse(subscription.has_access(TODAY))
        self.assertIs(subscription.effective_status(TODAY), SubscriptionStatus.EXPIRADA)
        self.assertIs(subscription.expire(TODAY).status, SubscriptionStatus.EXPIRADA)

    def test_last_grace_day_is_inclusive(self) -> None:
        subscription = _subscription(SubscriptionStatus.ATIVA, period_end=TODAY - timedelta(days=7))
        self.assertFalse(subscription.is_expired(TODAY))
        self.assertTrue(subscription.is_expired(TODAY + timedelta(days=1)))

    def test_suspended_subscription_has_no_access(self) -> None:
        subscription = _subscription(SubscriptionStatus.SUSPENSA)
        self.assertFalse(subscription.has_access(TODAY))
        payload = subscription.to_dict(TODAY)
        self.assertEqual(payload["effective_status"], "suspensa")
        self.assertFalse(payload["has_access"])


if __name__ == "__main__":
    unittest.main()
