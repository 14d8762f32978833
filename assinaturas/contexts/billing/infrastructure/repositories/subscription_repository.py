from __future__ import annotations

from dataclasses import replace
from datetime import date

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.repository import SubscriptionRepository
from assinaturas.contexts.billing.domain.subscription import Subscription, SubscriptionStatus
from assinaturas.errors import ConcurrencyConflict
from assinaturas.infrastructure.repositories.base import (
    BaseRepository,
    parse_db_date,
    parse_db_timestamp,
    row_id,
)


_COLUMNS = """
    id, tenant_id, plan_id, status, billing_cycle, period_start, period_end,
    amount_cents, currency, payment_method, external_transaction_id,
    grace_period_days, notes, version, created_at, updated_at
"""


def _row_to_subscription(row) -> Subscription:
    data = dict(row)
    return Subscription(
        id=int(data["id"]),
        tenant_id=str(data["tenant_id"]),
        plan_id=str(data["plan_id"]),
        status=SubscriptionStatus(str(data["status"])),
        billing_cycle=str(data["billing_cycle"]),
        period_start=parse_db_date(data["period_start"]),
        period_end=parse_db_date(data["period_end"]),
        amount=Money.of(int(data["amount_cents"] or 0), str(data.get("currency") or "BRL")),
        payment_method=data.get("payment_method"),
        external_transaction_id=data.get("external_transaction_id"),
        grace_period_days=int(data.get("grace_period_days") or 0),
        notes=data.get("notes"),
        version=int(data.get("version") or 0),
        created_at=parse_db_timestamp(data.get("created_at")),
        updated_at=parse_db_timestamp(data.get("updated_at")),
    )


class SqlSubscriptionRepository(BaseRepository, SubscriptionRepository):
    def find_by_id(self, db, subscription_id: int) -> Subscription | None:
        row = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (int(subscription_id), self.tenant_id),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def find_by_external_id(self, db, external_id: str) -> Subscription | None:
        """Resolve a provider charge id through the subscription column or its charge rows."""
        row = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE external_transaction_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (external_id, self.tenant_id),
        ).fetchone()
        if row:
            return _row_to_subscription(row)
        row = db.execute(
            """
            SELECT subscription_id
            FROM payment_charges
            WHERE external_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (external_id, self.tenant_id),
        ).fetchone()
        if not row:
            return None
        return self.find_by_id(db, int(dict(row)["subscription_id"]))

    def save(self, db, subscription: Subscription) -> Subscription:
        if subscription.tenant_id != self.tenant_id:
            raise ConcurrencyConflict(details="subscription belongs to another tenant")
        if subscription.id is None:
            return self._insert(db, subscription)

        cursor = db.execute(
            """
            UPDATE subscriptions
            SET plan_id = ?,
                status = ?,
                billing_cycle = ?,
                period_start = ?,
                period_end = ?,
                amount_cents = ?,
                currency = ?,
                payment_method = ?,
                external_transaction_id = ?,
                notes = ?,
                version = version + 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ? AND version = ?
            """,
            (
                subscription.plan_id,
                subscription.status.value,
                subscription.billing_cycle.value,
                subscription.period_start.isoformat(),
                subscription.period_end.isoformat(),
                subscription.amount.amount,
                subscription.amount.currency,
                subscription.payment_method,
                subscription.external_transaction_id,
                subscription.notes,
                int(subscription.id),
                self.tenant_id,
                int(subscription.version),
            ),
        )
        if int(cursor.rowcount or 0) != 1:
            raise ConcurrencyConflict(
                details=f"subscription {subscription.id} changed since version {subscription.version}",
                payload={"subscription_id": subscription.id},
            )
        return replace(subscription, version=int(subscription.version) + 1)

    def _insert(self, db, subscription: Subscription) -> Subscription:
        cursor = db.execute(
            """
            INSERT INTO subscriptions (
                tenant_id, plan_id, status, billing_cycle, period_start, period_end,
                amount_cents, currency, payment_method, external_transaction_id,
                grace_period_days, notes, version
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            RETURNING id
            """,
            (
                self.tenant_id,
                subscription.plan_id,
                subscription.status.value,
                subscription.billing_cycle.value,
                subscription.period_start.isoformat(),
                subscription.period_end.isoformat(),
                subscription.amount.amount,
                subscription.amount.currency,
                subscription.payment_method,
                subscription.external_transaction_id,
                int(subscription.grace_period_days),
                subscription.notes,
            ),
        )
        return replace(subscription, id=row_id(cursor.fetchone()), version=1)

    def list_expiring_before(
        self,
        db,
        before: date,
        statuses: tuple[SubscriptionStatus, ...] = (SubscriptionStatus.ATIVA,),
        limit: int = 500,
    ) -> list[Subscription]:
        placeholders = ", ".join("?" for _ in statuses)
        rows = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE tenant_id = ?
              AND status IN ({placeholders})
              AND period_end < ?
            ORDER BY period_end ASC, id ASC
            LIMIT ?
            """,
            (self.tenant_id, *[status.value for status in statuses], before.isoformat(), int(limit)),
        ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    def list_for_tenant(self, db, limit: int = 100) -> list[Subscription]:
        rows = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE tenant_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (self.tenant_id, int(limit)),
        ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    def list_active_for_tenant(self, db) -> list[Subscription]:
        rows = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE tenant_id = ? AND status = ?
            ORDER BY period_end DESC, id DESC
            """,
            (self.tenant_id, SubscriptionStatus.ATIVA.value),
        ).fetchall()
        return [_row_to_subscription(row) for row in rows]


def list_tenants_with_expiring(db, before: date) -> list[str]:
    """Tenants owning active rows whose period ended before ``before`` (sweep fan-out)."""
    rows = db.execute(
        """
        SELECT DISTINCT tenant_id
        FROM subscriptions
        WHERE status = ? AND period_end < ?
        ORDER BY tenant_id
        """,
        (SubscriptionStatus.ATIVA.value, before.isoformat()),
    ).fetchall()
    return [str(dict(row)["tenant_id"]) for row in rows]
