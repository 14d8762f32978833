from __future__ import annotations

import json
from datetime import date

import click
from flask import Flask

from assinaturas.contexts.billing.application.maintenance import expire_overdue, reconcile_pending
from assinaturas.contexts.billing.infrastructure.gateway_registry import get_gateway
from assinaturas.contexts.billing.infrastructure.repositories.plan_repository import ensure_tenant, seed_default_plans
from assinaturas.db import get_db


def _parse_date(value: str | None) -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise click.BadParameter("use o formato AAAA-MM-DD", param_hint="--date") from exc


def register_billing_cli(app: Flask) -> None:
    @app.cli.group("billing")
    def billing_group() -> None:
        """Rotinas de assinaturas e cobrancas."""

    @billing_group.command("expire-overdue")
    @click.option("--date", "reference_date", default=None, help="Data de referencia (AAAA-MM-DD).")
    def expire_overdue_command(reference_date: str | None) -> None:
        summary = expire_overdue(get_db(), _parse_date(reference_date))
        click.echo(json.dumps(summary, sort_keys=True))

    @billing_group.command("reconcile-pending")
    @click.option("--min-age-hours", type=int, default=None, help="Idade minima da cobranca em horas.")
    @click.option("--lookback-days", type=int, default=None, help="Janela maxima de busca em dias.")
    def reconcile_pending_command(min_age_hours: int | None, lookback_days: int | None) -> None:
        gateway = get_gateway()
        if gateway is None:
            raise click.ClickException("Nenhum gateway de pagamento configurado.")
        summary = reconcile_pending(
            get_db(),
            gateway,
            min_age_hours=app.config.get("BILLING_PENDING_MIN_AGE_HOURS", 1) if min_age_hours is None else min_age_hours,
            lookback_days=app.config.get("BILLING_PENDING_LOOKBACK_DAYS", 7) if lookback_days is None else lookback_days,
        )
        click.echo(json.dumps(summary, sort_keys=True))

    @billing_group.command("seed-plans")
    @click.option("--tenant", "tenant_id", default=None, help="Cria tambem o workspace informado.")
    @click.option("--billing-email", default=None, help="Email de cobranca do workspace.")
    def seed_plans_command(tenant_id: str | None, billing_email: str | None) -> None:
        db = get_db()
        created = seed_default_plans(db)
        if tenant_id:
            ensure_tenant(db, tenant_id.strip(), billing_email=billing_email)
        click.echo(f"Planos criados: {created}.")
