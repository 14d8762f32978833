from __future__ import annotations

import json
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.plans import Plan, PlanReadModel


DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "id": "gratuito",
        "name": "Gratuito",
        "price_monthly_cents": 0,
        "price_annual_cents": 0,
        "feature_limits": {"limite_processos": 5, "limite_usuarios": 1, "limite_armazenamento_mb": 100},
    },
    {
        "id": "basico",
        "name": "Basico",
        "price_monthly_cents": 9990,
        "price_annual_cents": None,
        "feature_limits": {"limite_processos": 50, "limite_usuarios": 3, "limite_armazenamento_mb": 1024},
    },
    {
        "id": "profissional",
        "name": "Profissional",
        "price_monthly_cents": 19990,
        "price_annual_cents": 199900,
        "feature_limits": {"limite_processos": None, "limite_usuarios": 10, "limite_armazenamento_mb": 10240},
    },
)


def _row_to_plan(row) -> Plan:
    data = dict(row)
    currency = str(data.get("currency") or "BRL")
    limits = data.get("feature_limits") or {}
    if isinstance(limits, str):
        limits = json.loads(limits or "{}")
    annual = data.get("price_annual_cents")
    return Plan(
        id=str(data["id"]),
        name=str(data["name"]),
        price_monthly=Money.of(int(data["price_monthly_cents"] or 0), currency),
        price_annual=Money.of(int(annual), currency) if annual is not None else None,
        feature_limits=dict(limits),
        active=bool(data.get("active")),
    )


class SqlPlanReadModel(PlanReadModel):
    def __init__(self, db) -> None:
        self._db = db

    def get_plan(self, tenant_id: str, plan_id: str) -> Plan | None:
        row = self._db.execute(
            """
            SELECT id, name, price_monthly_cents, price_annual_cents, currency, feature_limits, active
            FROM plans
            WHERE id = ?
            LIMIT 1
            """,
            (str(plan_id or "").strip(),),
        ).fetchone()
        return _row_to_plan(row) if row else None

    def list_plans(self, tenant_id: str) -> list[Plan]:
        rows = self._db.execute(
            """
            SELECT id, name, price_monthly_cents, price_annual_cents, currency, feature_limits, active
            FROM plans
            WHERE active = ?
            ORDER BY price_monthly_cents ASC, id ASC
            """,
            (True,),
        ).fetchall()
        return [_row_to_plan(row) for row in rows]

    def get_tenant_billing_email(self, tenant_id: str) -> str | None:
        row = self._db.execute(
            "SELECT billing_email FROM tenants WHERE id = ? LIMIT 1",
            (tenant_id,),
        ).fetchone()
        if not row:
            return None
        email = str(dict(row).get("billing_email") or "").strip()
        return email or None


def seed_default_plans(db, plans: tuple[dict[str, Any], ...] = DEFAULT_PLANS) -> int:
    created = 0
    for plan in plans:
        cursor = db.execute(
            """
            INSERT INTO plans (id, name, price_monthly_cents, price_annual_cents, currency, feature_limits, active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                plan["id"],
                plan["name"],
                int(plan["price_monthly_cents"]),
                plan.get("price_annual_cents"),
                plan.get("currency", "BRL"),
                json.dumps(plan.get("feature_limits") or {}),
                True,
            ),
        )
        created += max(int(cursor.rowcount or 0), 0)
    db.commit()
    return created


def ensure_tenant(db, tenant_id: str, *, name: str | None = None, billing_email: str | None = None) -> None:
    db.execute(
        """
        INSERT INTO tenants (id, name, billing_email)
        VALUES (?, ?, ?)
        ON CONFLICT (id) DO NOTHING
        """,
        (tenant_id, name or tenant_id, billing_email),
    )
    db.commit()
