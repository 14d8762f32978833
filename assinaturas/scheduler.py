from __future__ import annotations

import os
import threading
import time
import uuid
from datetime import date
from typing import Callable

from flask import Flask

from assinaturas.contexts.billing.application.maintenance import expire_overdue, reconcile_pending
from assinaturas.contexts.billing.infrastructure.gateway_registry import get_gateway
from assinaturas.db import close_db, get_db
from assinaturas.observability import bind_request_id


JOB_EXPIRE_OVERDUE = "expire_overdue"
JOB_RECONCILE_PENDING = "reconcile_pending"


class BillingScheduler:
    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "BILLING_SCHEDULER_INTERVAL_SECONDS", 900, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "BILLING_SCHEDULER_MIN_BACKOFF_SECONDS", 60, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "BILLING_SCHEDULER_MAX_BACKOFF_SECONDS",
            3600,
            self.min_backoff_seconds,
            86_400,
        )
        self.min_age_hours = _int_config(app, "BILLING_PENDING_MIN_AGE_HOURS", 1, 0, 720)
        self.lookback_days = _int_config(app, "BILLING_PENDING_LOOKBACK_DAYS", 7, 1, 365)

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="billing-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> None:
        with self.app.app_context(), bind_request_id(f"scheduler-{uuid.uuid4().hex[:12]}"):
            try:
                self._run_job(JOB_EXPIRE_OVERDUE, lambda: expire_overdue(get_db(), date.today()))
                gateway = get_gateway()
                if gateway is not None:
                    self._run_job(
                        JOB_RECONCILE_PENDING,
                        lambda: reconcile_pending(
                            get_db(),
                            gateway,
                            min_age_hours=self.min_age_hours,
                            lookback_days=self.lookback_days,
                        ),
                    )
            finally:
                close_db()

    def _run_job(self, key: str, job: Callable[[], dict]) -> None:
        if not self._is_due(key):
            return
        try:
            summary = job()
        except Exception as exc:  # noqa: BLE001 - next run is delayed by backoff
            failures = self._register_failure(key)
            self.app.logger.exception(
                "billing_job_failed",
                extra={"job": key, "failures": failures, "details": str(exc)[:200]},
            )
            return
        self._clear_backoff(key)
        self.app.logger.info("billing_job_finished", extra={"job": key, "summary": summary})

    def _is_due(self, key: str) -> bool:
        next_run_at = self._next_run_at.get(key)
        if next_run_at is None:
            return True
        return time.monotonic() >= next_run_at

    def _clear_backoff(self, key: str) -> None:
        self._failure_counts.pop(key, None)
        self._next_run_at.pop(key, None)

    def _register_failure(self, key: str) -> int:
        failure_count = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[key] = time.monotonic() + backoff_seconds
        return failure_count


def start_billing_scheduler(app: Flask) -> BillingScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = BillingScheduler(app)
    scheduler.start()
    app.extensions["billing_scheduler"] = scheduler
    app.logger.info(
        "Billing scheduler started: interval=%ss",
        scheduler.interval_seconds,
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("BILLING_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
