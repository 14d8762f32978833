import unittest
from unittest.mock import patch

from assinaturas.contexts.billing.infrastructure.circuit_breaker import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    GatewayCircuitBreaker,
)
from assinaturas.scheduler import JOB_EXPIRE_OVERDUE, BillingScheduler, start_billing_scheduler
from tests.helpers.billing_app import BillingAppHarness


_BREAKER = "assinaturas.contexts.billing.infrastructure.circuit_breaker"


class GatewayCircuitBreakerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = [100.0]
        patcher = patch(f"{_BREAKER}.time.monotonic", side_effect=lambda: self.clock[0])
        patcher.start()
        self.addCleanup(patcher.stop)
        self.breaker = GatewayCircuitBreaker()
        self.breaker.configure(
            enabled=True,
            error_rate_threshold=0.5,
            min_samples=2,
            window_seconds=60,
            open_seconds=30,
            half_open_max_calls=1,
        )

    def test_opens_after_error_rate_and_recovers_through_half_open(self) -> None:
        self.breaker.record_failure("transport")
        self.assertEqual(self.breaker.snapshot()["state"], STATE_CLOSED)
        self.clock[0] = 101.0
        self.breaker.record_failure("transport")
        self.assertEqual(self.breaker.snapshot()["state"], STATE_OPEN)

        self.clock[0] = 110.0
        self.assertEqual(self.breaker.before_call(), (False, STATE_OPEN))

        self.clock[0] = 132.0
        self.assertEqual(self.breaker.before_call(), (True, STATE_HALF_OPEN))
        self.assertEqual(self.breaker.before_call(), (False, STATE_HALF_OPEN))

        self.breaker.record_success()
        snapshot = self.breaker.snapshot()
        self.assertEqual(snapshot["state"], STATE_CLOSED)
        self.assertEqual(snapshot["last_failure_code"], "transport")

    def test_failed_half_open_call_reopens(self) -> None:
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.clock[0] = 140.0
        self.assertTrue(self.breaker.before_call()[0])
        self.breaker.record_failure("timeout")
        self.assertEqual(self.breaker.snapshot()["state"], STATE_OPEN)

    def test_old_failures_leave_the_window(self) -> None:
        self.breaker.record_failure()
        self.clock[0] = 200.0
        self.breaker.record_success()
        self.breaker.record_failure()
        snapshot = self.breaker.snapshot()
        self.assertEqual(snapshot["samples"], 2)
        self.assertEqual(snapshot["state"], STATE_OPEN)

    def test_disabled_breaker_always_allows(self) -> None:
        self.breaker.configure(
            enabled=False,
            error_rate_threshold=0.5,
            min_samples=1,
            window_seconds=60,
            open_seconds=30,
            half_open_max_calls=1,
        )
        self.breaker.record_failure()
        self.assertEqual(self.breaker.before_call(), (True, "disabled"))


class BillingSchedulerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.harness = BillingAppHarness(prefix="scheduler")
        self.app = self.harness.app

    def tearDown(self) -> None:
        self.harness.cleanup()

    def test_scheduler_does_not_start_under_tests(self) -> None:
        self.app.config["BILLING_SCHEDULER_ENABLED"] = True
        self.assertIsNone(start_billing_scheduler(self.app))

    def test_run_once_executes_both_jobs(self) -> None:
        scheduler = BillingScheduler(self.app)
        with patch("assinaturas.scheduler.expire_overdue", return_value={"expired": 0}) as expire, patch(
            "assinaturas.scheduler.reconcile_pending", return_value={"checked": 0}
        ) as reconcile:
            scheduler.run_once()

        self.assertEqual(expire.call_count, 1)
        self.assertEqual(reconcile.call_count, 1)
        self.assertEqual(reconcile.call_args.kwargs["min_age_hours"], 1)
        self.assertEqual(reconcile.call_args.kwargs["lookback_days"], 7)

    def test_failing_job_backs_off_without_blocking_the_other(self) -> None:
        scheduler = BillingScheduler(self.app)
        with patch("assinaturas.scheduler.expire_overdue", side_effect=RuntimeError("db locked")) as expire, patch(
            "assinaturas.scheduler.reconcile_pending", return_value={"checked": 0}
        ) as reconcile:
            with self.assertLogs("assinaturas", level="ERROR") as logs:
                scheduler.run_once()
            scheduler.run_once()

        self.assertEqual(expire.call_count, 1)
        self.assertEqual(reconcile.call_count, 2)
        self.assertIn("billing_job_failed", logs.output[0])
        self.assertIn(JOB_EXPIRE_OVERDUE, scheduler._next_run_at)


if __name__ == "__main__":
    unittest.main()
