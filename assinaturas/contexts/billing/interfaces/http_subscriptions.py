from __future__ import annotations

from flask import Blueprint, jsonify, request

from assinaturas.contexts.billing.application.subscription_service import SubscriptionService
from assinaturas.contexts.billing.infrastructure.gateway_registry import get_gateway
from assinaturas.db import get_db
from assinaturas.domain.contracts import (
    PaymentDetailsInput,
    PlanChangeInput,
    RenewalInput,
    ServiceOutput,
    SubscriptionCreateInput,
)
from assinaturas.errors import ValidationError
from assinaturas.tenant import require_tenant_id


billing_bp = Blueprint("billing", __name__, url_prefix="/api/billing")


def _invalid(field_name: str, code: str = "validation_error", message_key: str = "action_invalid") -> ValidationError:
    return ValidationError(code=code, message_key=message_key, payload={"field": field_name})


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise _invalid("body")
    return payload


def _payment_details(payload: dict) -> PaymentDetailsInput | None:
    value = payload.get("payment")
    if value is None:
        return None
    if not isinstance(value, dict):
        raise _invalid("payment")
    return PaymentDetailsInput.from_payload(value)


def _months(payload: dict) -> int:
    raw = payload.get("months", 1)
    if isinstance(raw, bool):
        raise _invalid("months", "renewal_months_invalid", "renewal_months_invalid")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise _invalid("months", "renewal_months_invalid", "renewal_months_invalid") from exc


def _service() -> SubscriptionService:
    return SubscriptionService(get_db(), get_gateway())


def _respond(result: ServiceOutput):
    return jsonify(result.payload), result.status_code


@billing_bp.route("/plans", methods=["GET"])
def list_plans():
    return _respond(_service().list_plans(require_tenant_id()))


@billing_bp.route("/subscriptions", methods=["GET"])
def subscription_history():
    limit = request.args.get("limit", default=100, type=int) or 100
    return _respond(_service().history(require_tenant_id(), limit=max(1, min(limit, 500))))


@billing_bp.route("/subscriptions/current", methods=["GET"])
def current_subscription():
    return _respond(_service().current_subscription(require_tenant_id()))


@billing_bp.route("/subscriptions/<int:subscription_id>", methods=["GET"])
def get_subscription(subscription_id: int):
    return _respond(_service().get_subscription(require_tenant_id(), subscription_id))


@billing_bp.route("/subscriptions/<int:subscription_id>/charges", methods=["GET"])
def list_charges(subscription_id: int):
    return _respond(_service().list_charges(require_tenant_id(), subscription_id))


@billing_bp.route("/subscriptions", methods=["POST"])
def create_subscription():
    tenant_id = require_tenant_id()
    payload = _json_payload()
    plan_id = str(payload.get("plan_id") or "").strip()
    if not plan_id:
        raise _invalid("plan_id")
    data = SubscriptionCreateInput(
        plan_id=plan_id,
        billing_cycle=str(payload.get("billing_cycle") or "mensal"),
        payment=_payment_details(payload),
    )
    return _respond(_service().create_subscription(tenant_id, data))


@billing_bp.route("/subscriptions/<int:subscription_id>/renew", methods=["POST"])
def renew_subscription(subscription_id: int):
    tenant_id = require_tenant_id()
    payload = _json_payload()
    data = RenewalInput(months=_months(payload), payment=_payment_details(payload))
    return _respond(_service().renew(tenant_id, subscription_id, data))


@billing_bp.route("/subscriptions/<int:subscription_id>/retry-payment", methods=["POST"])
def retry_payment(subscription_id: int):
    tenant_id = require_tenant_id()
    payload = _json_payload()
    return _respond(_service().retry_payment(tenant_id, subscription_id, RenewalInput(payment=_payment_details(payload))))


@billing_bp.route("/subscriptions/<int:subscription_id>/change-plan", methods=["POST"])
def change_plan(subscription_id: int):
    tenant_id = require_tenant_id()
    payload = _json_payload()
    plan_id = str(payload.get("plan_id") or "").strip()
    if not plan_id:
        raise _invalid("plan_id")
    data = PlanChangeInput(
        plan_id=plan_id,
        billing_cycle=str(payload.get("billing_cycle") or "").strip() or None,
        simulate=bool(payload.get("simulate")) or request.args.get("simulate") in {"1", "true"},
        payment=_payment_details(payload),
    )
    return _respond(_service().change_plan(tenant_id, subscription_id, data))


@billing_bp.route("/subscriptions/<int:subscription_id>/cancel", methods=["POST"])
def cancel_subscription(subscription_id: int):
    tenant_id = require_tenant_id()
    payload = _json_payload()
    reason = str(payload.get("reason") or "").strip() or None
    return _respond(_service().cancel(tenant_id, subscription_id, reason))
