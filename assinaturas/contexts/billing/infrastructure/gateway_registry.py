from __future__ import annotations

from flask import current_app

from assinaturas.contexts.billing.domain.gateway import PaymentGateway
from assinaturas.contexts.billing.infrastructure.circuit_breaker import get_gateway_circuit_breaker
from assinaturas.contexts.billing.infrastructure.mercadopago_gateway import MercadoPagoGateway
from assinaturas.contexts.billing.infrastructure.simulator.fake_gateway import SimulatedPaymentGateway


_EXTENSION_KEY = "billing_gateways"


def build_gateways(config) -> dict[str, PaymentGateway]:
    allow_unsigned = bool(config.get("WEBHOOK_ALLOW_UNSIGNED", False))
    selected = str(config.get("BILLING_GATEWAY") or "simulator").strip().lower()
    gateways: dict[str, PaymentGateway] = {}
    if selected == SimulatedPaymentGateway.provider_name or config.get("TESTING"):
        gateways[SimulatedPaymentGateway.provider_name] = SimulatedPaymentGateway(
            webhook_secret=str(config.get("SIMULATOR_WEBHOOK_SECRET") or "simulator-webhook-secret"),
            allow_unsigned=allow_unsigned,
        )
    if selected == MercadoPagoGateway.provider_name or config.get("MERCADOPAGO_ACCESS_TOKEN"):
        gateways[MercadoPagoGateway.provider_name] = MercadoPagoGateway(
            webhook_secret=config.get("MERCADOPAGO_WEBHOOK_SECRET"),
            statement_descriptor=config.get("BILLING_STATEMENT_DESCRIPTOR"),
            notification_url=config.get("MERCADOPAGO_NOTIFICATION_URL"),
            signature_tolerance_seconds=int(config.get("WEBHOOK_SIGNATURE_TOLERANCE_SECONDS") or 0),
            allow_unsigned=allow_unsigned,
        )
    return gateways


def init_gateways(app) -> None:
    get_gateway_circuit_breaker().configure_from(app.config)
    app.extensions[_EXTENSION_KEY] = build_gateways(app.config)


def get_gateway(provider: str | None = None) -> PaymentGateway | None:
    gateways = current_app.extensions.get(_EXTENSION_KEY) or {}
    name = str(provider or current_app.config.get("BILLING_GATEWAY") or "simulator").strip().lower()
    return gateways.get(name)
