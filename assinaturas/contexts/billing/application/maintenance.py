from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from assinaturas.contexts.billing.application.subscription_service import SubscriptionService
from assinaturas.contexts.billing.domain.gateway import GatewayError, PaymentGateway
from assinaturas.contexts.billing.infrastructure.repositories import ChargeRepository, SqlSubscriptionRepository
from assinaturas.contexts.billing.infrastructure.repositories.charge_repository import list_open_charges
from assinaturas.contexts.billing.infrastructure.repositories.subscription_repository import (
    list_tenants_with_expiring,
)
from assinaturas.core.event_bus import EventBus, SubscriptionExpired, SubscriptionGraceStarted, get_event_bus
from assinaturas.errors import ConcurrencyConflict, NotFoundError
from assinaturas.observability import observe_concurrency_conflict


_LOGGER = logging.getLogger("assinaturas.billing.maintenance")


def _grace_notice_marker(period_end: date) -> str:
    return f"Aviso de carencia enviado (vencimento {period_end.isoformat()})."


def expire_overdue(
    db,
    today: date,
    *,
    event_bus: EventBus | None = None,
    limit: int = 500,
) -> dict[str, int]:
    """Persist ``expirada`` for rows past their grace window and remind rows inside it.

    Each row is written with its own compare-and-swap; a row that changed
    under the sweep is left for the next run.
    """
    bus = event_bus or get_event_bus()
    summary = {"checked": 0, "expired": 0, "in_grace": 0, "reminders": 0, "conflicts": 0}
    for tenant_id in list_tenants_with_expiring(db, today):
        repository = SqlSubscriptionRepository(tenant_id=tenant_id)
        for subscription in repository.list_expiring_before(db, today, limit=limit):
            summary["checked"] += 1
            if subscription.is_expired(today):
                try:
                    with db.transaction():
                        saved = repository.save(db, subscription.expire(today))
                except ConcurrencyConflict:
                    observe_concurrency_conflict()
                    summary["conflicts"] += 1
                    _LOGGER.warning(
                        "subscription_expiry_skipped",
                        extra={"tenant_id": tenant_id, "subscription_id": subscription.id},
                    )
                    continue
                summary["expired"] += 1
                _LOGGER.info(
                    "subscription_expired",
                    extra={
                        "tenant_id": tenant_id,
                        "subscription_id": saved.id,
                        "period_end": saved.period_end.isoformat(),
                    },
                )
                bus.publish(
                    SubscriptionExpired(
                        tenant_id=tenant_id,
                        subscription_id=int(saved.id),
                        period_end=saved.period_end.isoformat(),
                    )
                )
                continue

            if not subscription.is_in_grace(today):
                continue
            summary["in_grace"] += 1
            marker = _grace_notice_marker(subscription.period_end)
            if marker in (subscription.notes or ""):
                continue
            try:
                with db.transaction():
                    saved = repository.save(db, subscription.with_note(marker))
            except ConcurrencyConflict:
                observe_concurrency_conflict()
                summary["conflicts"] += 1
                continue
            summary["reminders"] += 1
            bus.publish(
                SubscriptionGraceStarted(
                    tenant_id=tenant_id,
                    subscription_id=int(saved.id),
                    period_end=saved.period_end.isoformat(),
                    grace_end=saved.grace_end().isoformat(),
                )
            )
    _LOGGER.info("expiry_sweep_finished", extra={"today": today.isoformat(), **summary})
    return summary


def reconcile_pending(
    db,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
    min_age_hours: int = 1,
    lookback_days: int = 7,
    limit: int = 200,
    clock: Callable[[], date] | None = None,
) -> dict[str, int]:
    """Re-query charges still waiting for a final answer and feed them to reconciliation."""
    now = now or datetime.now(timezone.utc)
    rows = list_open_charges(
        db,
        created_before=now - timedelta(hours=max(0, int(min_age_hours))),
        created_after=now - timedelta(days=max(1, int(lookback_days))),
        limit=limit,
    )
    summary: dict[str, int] = {"checked": 0, "not_found": 0, "errors": 0}
    for row in rows:
        tenant_id = str(row["tenant_id"])
        charges = ChargeRepository(tenant_id=tenant_id)
        charge = charges.get_by_id(db, int(row["id"]))
        if charge is None:
            continue
        summary["checked"] += 1
        try:
            if charge.external_id:
                result = gateway.query_status(charge.external_id)
            else:
                result = gateway.find_by_reference(charge.idempotency_key)
        except GatewayError as exc:
            summary["errors"] += 1
            _LOGGER.warning(
                "pending_charge_check_failed",
                extra={
                    "tenant_id": tenant_id,
                    "charge_id": charge.id,
                    "idempotency_key": charge.idempotency_key,
                    "error_code": exc.code,
                },
            )
            continue

        if result is None:
            with db.transaction():
                charges.mark_checked(db, charge)
            summary["not_found"] += 1
            continue

        service = SubscriptionService(db, gateway, clock=clock)
        try:
            outcome = service.reconcile_charge(tenant_id, charge, result, source="polling")
        except (ConcurrencyConflict, NotFoundError) as exc:
            summary["errors"] += 1
            _LOGGER.warning(
                "pending_charge_reconcile_failed",
                extra={"tenant_id": tenant_id, "charge_id": charge.id, "error_code": exc.code},
            )
            continue
        summary[outcome.outcome] = summary.get(outcome.outcome, 0) + 1
    _LOGGER.info("pending_charges_reconciled", extra=dict(summary))
    return summary
