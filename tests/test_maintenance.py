import json
import unittest
from datetime import date, datetime, timedelta, timezone

from assinaturas.contexts.billing.application.maintenance import expire_overdue, reconcile_pending
from assinaturas.contexts.billing.application.subscription_service import SubscriptionService
from assinaturas.contexts.billing.infrastructure.repositories import SqlSubscriptionRepository
from assinaturas.contexts.billing.infrastructure.repositories.plan_repository import ensure_tenant
from assinaturas.db import get_db
from assinaturas.domain.contracts import PaymentDetailsInput, SubscriptionCreateInput
from tests.helpers.billing_app import BillingAppHarness


TODAY = date.today()


def _card(token: str = "tok_approved") -> PaymentDetailsInput:
    return PaymentDetailsInput(payer_email="financeiro@empresa.com.br", payment_method="credit_card", card_token=token)


def _pix() -> PaymentDetailsInput:
    return PaymentDetailsInput(payer_email="financeiro@empresa.com.br", payment_method="pix")


class MaintenanceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.harness = BillingAppHarness(prefix="maintenance")
        self.ctx = self.harness.app.app_context()
        self.ctx.push()
        self.db = get_db()
        self.gateway = self.harness.gateway
        ensure_tenant(self.db, "tenant-b", billing_email="contas@outra.com.br")

    def tearDown(self) -> None:
        self.ctx.pop()
        self.harness.cleanup()

    def _subscribe(self, tenant_id: str, *, started: date, payment: PaymentDetailsInput | None = None) -> dict:
        service = SubscriptionService(self.db, self.gateway, clock=lambda: started)
        output = service.create_subscription(
            tenant_id,
            SubscriptionCreateInput(plan_id="basico", payment=payment or _card()),
        )
        return output.payload["subscription"]

    def _load(self, tenant_id: str, subscription_id: int):
        return SqlSubscriptionRepository(tenant_id=tenant_id).find_by_id(self.db, subscription_id)

    def test_sweep_expires_past_grace_and_reminds_inside_it(self) -> None:
        overdue = self._subscribe("tenant-a", started=TODAY - timedelta(days=38))
        in_grace = self._subscribe("tenant-b", started=TODAY - timedelta(days=33))
        self.harness.mailer.sent.clear()

        summary = expire_overdue(self.db, TODAY)

        self.assertEqual(summary, {"checked": 2, "expired": 1, "in_grace": 1, "reminders": 1, "conflicts": 0})
        self.assertEqual(self._load("tenant-a", overdue["id"]).status.value, "expirada")
        grace = self._load("tenant-b", in_grace["id"])
        self.assertEqual(grace.status.value, "ativa")
        self.assertTrue(grace.has_access(TODAY))
        self.assertEqual(
            sorted((item.tenant_id, item.template) for item in self.harness.mailer.sent),
            [("tenant-a", "subscription_expired"), ("tenant-b", "subscription_grace_started")],
        )
        reminder = next(item for item in self.harness.mailer.sent if item.tenant_id == "tenant-b")
        self.assertEqual(reminder.recipient, "contas@outra.com.br")

        again = expire_overdue(self.db, TODAY)
        self.assertEqual(again, {"checked": 1, "expired": 0, "in_grace": 1, "reminders": 0, "conflicts": 0})
        self.assertEqual(len(self.harness.mailer.sent), 2)

    def test_sweep_ignores_current_periods(self) -> None:
        self._subscribe("tenant-a", started=TODAY - timedelta(days=10))
        self.assertEqual(expire_overdue(self.db, TODAY)["checked"], 0)

    def test_polling_applies_approval_that_never_arrived_by_webhook(self) -> None:
        self.gateway.queue_external_id("pix_poll")
        created = self._subscribe("tenant-a", started=TODAY, payment=_pix())
        self.assertEqual(created["status"], "pendente")
        self.gateway.approve("pix_poll")
        self.gateway.drain_webhooks()

        summary = reconcile_pending(
            self.db,
            self.gateway,
            now=datetime.now(timezone.utc) + timedelta(hours=2),
            min_age_hours=1,
        )

        self.assertEqual(summary["checked"], 1)
        self.assertEqual(summary["applied"], 1)
        self.assertEqual(self._load("tenant-a", created["id"]).status.value, "ativa")
        self.assertEqual(self.harness.mailer.templates(), ["subscription_activated"])

        repeat = reconcile_pending(
            self.db,
            self.gateway,
            now=datetime.now(timezone.utc) + timedelta(hours=2),
            min_age_hours=1,
        )
        self.assertEqual(repeat["checked"], 0)

    def test_polling_skips_recent_charges_and_counts_missing_ones(self) -> None:
        created = self._subscribe("tenant-a", started=TODAY, payment=_card("tok_unreachable"))
        self.assertEqual(created["status"], "pendente")

        recent = reconcile_pending(self.db, self.gateway, now=datetime.now(timezone.utc), min_age_hours=1)
        self.assertEqual(recent["checked"], 0)

        later = reconcile_pending(
            self.db,
            self.gateway,
            now=datetime.now(timezone.utc) + timedelta(hours=2),
            min_age_hours=1,
        )
        self.assertEqual(later["checked"], 1)
        self.assertEqual(later["not_found"], 1)
        self.assertEqual(self._load("tenant-a", created["id"]).status.value, "pendente")

    def test_polling_counts_gateway_errors(self) -> None:
        self.gateway.queue_external_id("pix_err")
        self._subscribe("tenant-a", started=TODAY, payment=_pix())
        self.gateway.fail_next_queries = 1

        summary = reconcile_pending(
            self.db,
            self.gateway,
            now=datetime.now(timezone.utc) + timedelta(hours=2),
            min_age_hours=1,
        )
        self.assertEqual(summary["errors"], 1)


class BillingCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self.harness = BillingAppHarness(prefix="billing_cli")
        self.runner = self.harness.app.test_cli_runner()

    def tearDown(self) -> None:
        self.harness.cleanup()

    def test_expire_overdue_command_prints_summary(self) -> None:
        result = self.runner.invoke(args=["billing", "expire-overdue", "--date", "2026-10-18"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)["expired"], 0)

    def test_expire_overdue_rejects_bad_date(self) -> None:
        result = self.runner.invoke(args=["billing", "expire-overdue", "--date", "18/10/2026"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("AAAA-MM-DD", result.output)

    def test_reconcile_pending_command(self) -> None:
        result = self.runner.invoke(args=["billing", "reconcile-pending", "--min-age-hours", "0"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)["checked"], 0)

    def test_seed_plans_is_idempotent_and_creates_tenant(self) -> None:
        result = self.runner.invoke(
            args=["billing", "seed-plans", "--tenant", "tenant-c", "--billing-email", "c@empresa.com.br"]
        )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Planos criados: 0.", result.output)
        with self.harness.app.app_context():
            row = get_db().execute("SELECT billing_email FROM tenants WHERE id = ?", ("tenant-c",)).fetchone()
        self.assertEqual(dict(row)["billing_email"], "c@empresa.com.br")


if __name__ == "__main__":
    unittest.main()
