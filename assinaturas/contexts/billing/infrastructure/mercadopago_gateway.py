from __future__ import annotations

import logging
from typing import Callable, TypeVar

from assinaturas.contexts.billing.domain.gateway import GatewayError, GatewayRejected, PaymentGateway
from assinaturas.contexts.billing.domain.payment import PaymentRequest, PaymentResult
from assinaturas.contexts.billing.infrastructure import mercadopago_client
from assinaturas.contexts.billing.infrastructure.circuit_breaker import (
    GatewayCircuitBreaker,
    get_gateway_circuit_breaker,
)
from assinaturas.contexts.billing.infrastructure.mappers.mercadopago_payment import (
    map_error_response,
    map_payment_to_result,
    map_request_to_payload,
)
from assinaturas.contexts.billing.infrastructure.webhook_signature import verify_signature, webhook_data_id
from assinaturas.observability import observe_gateway_charge, observe_gateway_error


T = TypeVar("T")

PROVIDER = "mercadopago"


class MercadoPagoGateway(PaymentGateway):
    provider_name = PROVIDER

    def __init__(
        self,
        *,
        webhook_secret: str | None = None,
        statement_descriptor: str | None = None,
        notification_url: str | None = None,
        signature_tolerance_seconds: int = 0,
        allow_unsigned: bool = False,
        circuit_breaker: GatewayCircuitBreaker | None = None,
    ) -> None:
        self._webhook_secret = str(webhook_secret or "").strip() or None
        self._statement_descriptor = statement_descriptor
        self._notification_url = notification_url
        self._signature_tolerance_seconds = int(signature_tolerance_seconds or 0)
        self._allow_unsigned = bool(allow_unsigned)
        self._breaker = circuit_breaker or get_gateway_circuit_breaker()
        self._logger = logging.getLogger("assinaturas.billing.mercadopago")

    def _guarded(self, operation: str, call: Callable[[], T]) -> T:
        allowed, state = self._breaker.before_call()
        if not allowed:
            observe_gateway_error(PROVIDER, "circuit_open")
            raise GatewayError(f"Circuito do gateway aberto ({state}).", code="circuit_open")
        try:
            result = call()
        except mercadopago_client.MercadoPagoError as exc:
            if exc.is_transport:
                code = f"http_{exc.status_code}" if exc.status_code else "transport"
                self._breaker.record_failure(code)
                observe_gateway_error(PROVIDER, code)
                self._logger.warning(
                    "gateway_call_failed",
                    extra={"operation": operation, "error_code": code, "details": str(exc)[:200]},
                )
                raise GatewayError(str(exc), code=code) from exc
            self._breaker.record_success()
            raise
        self._breaker.record_success()
        return result

    def charge(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        payload = map_request_to_payload(
            request,
            idempotency_key,
            statement_descriptor=self._statement_descriptor,
            notification_url=self._notification_url,
        )
        try:
            response = self._guarded("charge", lambda: mercadopago_client.create_payment(payload, idempotency_key))
        except mercadopago_client.MercadoPagoError as exc:
            status_detail, user_message = map_error_response(exc.payload)
            observe_gateway_error(PROVIDER, status_detail or f"http_{exc.status_code}")
            raise GatewayRejected(str(exc), status_detail=status_detail, user_message=user_message) from exc
        result = map_payment_to_result(response)
        observe_gateway_charge(PROVIDER, result.status.value)
        return result

    def query_status(self, external_id: str) -> PaymentResult:
        try:
            response = self._guarded("query_status", lambda: mercadopago_client.get_payment(external_id))
        except mercadopago_client.MercadoPagoError as exc:
            raise GatewayError(str(exc), code=f"http_{exc.status_code}") from exc
        return map_payment_to_result(response)

    def find_by_reference(self, idempotency_key: str) -> PaymentResult | None:
        reference = str(idempotency_key or "")[:256]
        try:
            results = self._guarded(
                "find_by_reference",
                lambda: mercadopago_client.search_payments_by_reference(reference),
            )
        except mercadopago_client.MercadoPagoError as exc:
            raise GatewayError(str(exc), code=f"http_{exc.status_code}") from exc
        if not results:
            return None
        return map_payment_to_result(results[0])

    def verify_webhook_signature(self, payload: dict, signature: str | None) -> bool:
        return verify_signature(
            payload,
            signature,
            self._webhook_secret,
            tolerance_seconds=self._signature_tolerance_seconds,
            allow_unsigned=self._allow_unsigned,
        )

    def parse_webhook(self, payload: dict) -> PaymentResult:
        # The signature only covers data.id, so the status is always re-read from the provider.
        external_id = webhook_data_id(payload)
        if not external_id:
            raise GatewayError("Webhook sem data.id.", code="webhook_without_payment")
        return self.query_status(external_id)
