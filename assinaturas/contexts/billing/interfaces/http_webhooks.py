"""Public webhook endpoint for payment providers.

Deliveries are authenticated by signature, deduplicated by the persisted
``(provider, event_id)`` pair and then fed into the same reconciliation path
used by synchronous charges. Once a delivery is structurally accepted the
endpoint answers 200 even when processing fails, so the provider does not
keep retrying a payload the engine has already stored.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from flask import Blueprint, current_app, has_request_context, jsonify, request

from assinaturas.contexts.billing.application.subscription_service import SubscriptionService
from assinaturas.contexts.billing.domain.gateway import PaymentGateway
from assinaturas.contexts.billing.infrastructure.gateway_registry import get_gateway
from assinaturas.contexts.billing.infrastructure.repositories import WebhookEventRepository
from assinaturas.contexts.billing.infrastructure.repositories.charge_repository import (
    resolve_tenant_for_external_id,
    resolve_tenant_for_key,
)
from assinaturas.contexts.billing.infrastructure.repositories.webhook_event_repository import (
    STATUS_FAILED,
    STATUS_PROCESSED,
)
from assinaturas.contexts.billing.infrastructure.webhook_signature import webhook_data_id
from assinaturas.db import get_db
from assinaturas.errors import NotFoundError, SignatureError, ValidationError
from assinaturas.observability import observe_webhook, observe_webhook_signature_failure
from assinaturas.security import SimpleRateLimiter


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

SIGNATURE_HEADERS = ("X-Signature", "X-Webhook-Signature")
BODY_EXCERPT_CHARS = 500

_LOGGER = logging.getLogger("assinaturas.billing.webhooks")
_SIGNATURE_FAILURES = SimpleRateLimiter()


def reset_webhook_signature_alerts_for_tests() -> None:
    _SIGNATURE_FAILURES.reset()


def _body_excerpt() -> str:
    if not has_request_context():
        return ""
    return request.get_data(as_text=True)[:BODY_EXCERPT_CHARS]


def _fallback_event_id(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class WebhookIngress:
    def __init__(self, db, gateway: PaymentGateway, *, config=None, service: SubscriptionService | None = None) -> None:
        self.db = db
        self.gateway = gateway
        self.provider = gateway.provider_name
        self.config = config if config is not None else current_app.config
        self.events = WebhookEventRepository()
        self.service = service or SubscriptionService(db, gateway)

    def _validate(self, payload: Any) -> dict:
        if not isinstance(payload, dict) or not str(payload.get("type") or "").strip() or not webhook_data_id(payload):
            observe_webhook(self.provider, "invalid")
            _LOGGER.warning(
                "webhook_payload_invalid",
                extra={
                    "provider": self.provider,
                    "payload_type": type(payload).__name__,
                    "payload_keys": sorted(str(key) for key in payload)[:20] if isinstance(payload, dict) else [],
                    "body_excerpt": _body_excerpt(),
                },
            )
            raise ValidationError(code="webhook_payload_invalid", message_key="webhook_payload_invalid")
        return payload

    def _verify(self, payload: dict, signature: str | None) -> None:
        if self.gateway.verify_webhook_signature(payload, signature):
            return
        observe_webhook_signature_failure(self.provider)
        _LOGGER.warning(
            "webhook_signature_invalid",
            extra={"provider": self.provider, "has_signature": bool(signature), "external_id": webhook_data_id(payload)},
        )
        threshold = max(1, int(self.config.get("WEBHOOK_SIGNATURE_ALERT_THRESHOLD", 10) or 10))
        window = max(1, int(self.config.get("WEBHOOK_SIGNATURE_ALERT_WINDOW_SECONDS", 60) or 60))
        below_threshold, _retry_after = _SIGNATURE_FAILURES.allow(
            self.provider,
            limit=threshold,
            window_seconds=window,
        )
        if not below_threshold:
            _LOGGER.error(
                "webhook_signature_burst",
                extra={"provider": self.provider, "threshold": threshold, "window_seconds": window},
            )
        raise SignatureError()

    def _resolve_tenant(self, external_id: str, external_reference: str | None) -> str | None:
        tenant_id = resolve_tenant_for_external_id(self.db, external_id)
        if tenant_id is None and external_reference:
            tenant_id = resolve_tenant_for_key(self.db, external_reference)
        return tenant_id

    def _mark_failed(self, record_id: int, outcome: str) -> None:
        with self.db.transaction():
            self.events.mark(self.db, record_id, status=STATUS_FAILED, outcome=outcome)

    def handle(self, payload: Any, signature: str | None) -> tuple[dict, int]:
        payload = self._validate(payload)
        self._verify(payload, signature)

        event_type = str(payload.get("type") or "").strip().lower()
        if event_type != "payment":
            observe_webhook(self.provider, "ignored")
            _LOGGER.info("webhook_ignored", extra={"provider": self.provider, "event_type": event_type})
            return {"status": "ignored"}, 200

        event_id = self.gateway.webhook_event_id(payload) or _fallback_event_id(payload)
        record, is_new = self.events.register(
            self.db,
            provider=self.provider,
            event_id=event_id,
            external_id=webhook_data_id(payload),
            payload=payload,
        )
        if not is_new and record.get("status") == STATUS_PROCESSED:
            observe_webhook(self.provider, "duplicate")
            _LOGGER.info("webhook_duplicate", extra={"provider": self.provider, "event_id": event_id})
            return {"status": "duplicate", "event_id": event_id}, 200

        record_id = int(record["id"])
        try:
            result = self.gateway.parse_webhook(payload)
            tenant_id = self._resolve_tenant(result.external_id, result.external_reference)
            if tenant_id is None:
                self._mark_failed(record_id, "unknown_payment")
                observe_webhook(self.provider, "unknown_payment")
                _LOGGER.warning(
                    "webhook_unknown_payment",
                    extra={"provider": self.provider, "event_id": event_id, "external_id": result.external_id},
                )
                return {"status": "failed", "event_id": event_id, "outcome": "unknown_payment"}, 200

            def _mark_processed(db, outcome) -> None:
                self.events.mark(db, record_id, status=STATUS_PROCESSED, outcome=outcome.outcome)

            outcome = self.service.apply_payment_result(
                tenant_id,
                result,
                source="webhook",
                extra_writes=_mark_processed,
            )
        except Exception as exc:  # noqa: BLE001 - delivery already stored; reported and answered 200
            _LOGGER.exception(
                "webhook_processing_failed",
                extra={
                    "provider": self.provider,
                    "event_id": event_id,
                    "error_code": getattr(exc, "code", type(exc).__name__),
                },
            )
            self._mark_failed(record_id, str(getattr(exc, "code", "") or type(exc).__name__)[:80])
            observe_webhook(self.provider, "failed")
            return {"status": "failed", "event_id": event_id}, 200

        observe_webhook(self.provider, outcome.outcome)
        return {
            "status": "processed",
            "event_id": event_id,
            "outcome": outcome.outcome,
            "subscription_id": outcome.subscription.id,
            "subscription_status": outcome.subscription.status.value,
        }, 200


@webhooks_bp.route("/<string:provider>", methods=["POST"])
def receive_webhook(provider: str):
    gateway = get_gateway(provider)
    if gateway is None:
        observe_webhook("unknown", "unknown_provider")
        raise NotFoundError(
            code="webhook_provider_unknown",
            message_key="webhook_provider_unknown",
            payload={"provider": provider[:40]},
        )
    signature = next((request.headers.get(name) for name in SIGNATURE_HEADERS if request.headers.get(name)), None)
    ingress = WebhookIngress(get_db(), gateway)
    body, status_code = ingress.handle(request.get_json(silent=True), signature)
    return jsonify(body), status_code
