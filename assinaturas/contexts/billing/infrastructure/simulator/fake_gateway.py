"""In-memory payment provider used by tests and local development.

Charges are stored by idempotency key, so repeating a charge with the same
key returns the original result instead of charging twice. The outcome of a
card charge is picked from the card token:

``tok_approved`` (or any other token)  approved
``tok_rejected`` / ``tok_rejected_<detail>``  rejected with ``cc_rejected_<detail>``
``tok_pending``  in_process, confirmed later through a webhook
``tok_timeout``  charge is created but the response is lost (GatewayError)
``tok_unreachable``  provider never reached (GatewayError, nothing created)
``tok_declined``  request refused outright (GatewayRejected)

PIX and boleto charges stay pending until ``approve`` is called. Their results carry
the payment instructions (pix copy-and-paste code and QR image, boleto link).
Status changes queue webhook deliveries that tests drain explicitly, which
lets them delay, duplicate or reorder notifications.
"""

from __future__ import annotations

import base64
import itertools
import random
from dataclasses import replace
from datetime import datetime, timezone
from threading import RLock

from assinaturas.contexts.billing.domain.gateway import GatewayError, GatewayRejected, PaymentGateway
from assinaturas.contexts.billing.domain.payment import (
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
)
from assinaturas.contexts.billing.infrastructure.webhook_signature import (
    sign_payload,
    verify_signature,
    webhook_data_id,
)
from assinaturas.observability import observe_gateway_charge, observe_gateway_error
from assinaturas.ui_strings import payment_status_detail_message


PROVIDER = "simulator"
INSTRUCTIONS_BASE_URL = "https://simulador.invalid"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class SimulatedPaymentGateway(PaymentGateway):
    provider_name = PROVIDER

    def __init__(self, *, webhook_secret: str = "simulator-webhook-secret", allow_unsigned: bool = False) -> None:
        self._lock = RLock()
        self._webhook_secret = webhook_secret
        self._allow_unsigned = bool(allow_unsigned)
        self._sequence = itertools.count(1)
        self._delivery_sequence = itertools.count(1)
        self._payments: dict[str, PaymentResult] = {}
        self._by_key: dict[str, str] = {}
        self._queued_ids: list[str] = []
        self._outbox: list[dict] = []
        self.charge_calls = 0
        self.query_calls = 0
        self.fail_next_queries = 0

    # -- test controls -----------------------------------------------------

    def queue_external_id(self, external_id: str) -> None:
        """Force the provider id of the next created payment."""
        with self._lock:
            self._queued_ids.append(str(external_id))

    def approve(self, external_id: str) -> PaymentResult:
        return self.set_status(external_id, PaymentStatus.APPROVED, status_detail="accredited")

    def reject(self, external_id: str, status_detail: str = "cc_rejected_other_reason") -> PaymentResult:
        return self.set_status(external_id, PaymentStatus.REJECTED, status_detail=status_detail)

    def refund(self, external_id: str) -> PaymentResult:
        return self.set_status(external_id, PaymentStatus.REFUNDED, status_detail="refunded")

    def set_status(
        self,
        external_id: str,
        status: PaymentStatus,
        *,
        status_detail: str | None = None,
        notify: bool = True,
    ) -> PaymentResult:
        with self._lock:
            current = self._payments.get(external_id)
            if current is None:
                raise KeyError(external_id)
            status = PaymentStatus.parse(status)
            updated = replace(
                current,
                status=status,
                status_detail=status_detail,
                error_message=self._error_message(status, status_detail),
                approved_at=_utc_now() if status is PaymentStatus.APPROVED else None,
            )
            self._payments[external_id] = updated
            if notify:
                self._outbox.append(self.build_webhook(updated))
            return updated

    def payment(self, external_id: str) -> PaymentResult | None:
        with self._lock:
            return self._payments.get(external_id)

    def payments_for_key(self, idempotency_key: str) -> list[PaymentResult]:
        with self._lock:
            external_id = self._by_key.get(idempotency_key)
            return [self._payments[external_id]] if external_id else []

    def build_webhook(self, result: PaymentResult, *, embed_status: bool = True) -> dict:
        data: dict = {"id": result.external_id}
        if embed_status:
            data.update(
                {
                    "status": result.status.value,
                    "status_detail": result.status_detail,
                    "transaction_amount": str(result.amount.to_decimal()),
                    "currency_id": result.amount.currency,
                    "payment_method_id": result.payment_method,
                    "external_reference": result.external_reference,
                }
            )
        return {
            "id": f"evt_{next(self._delivery_sequence)}",
            "type": "payment",
            "action": "payment.updated",
            "data": data,
        }

    def sign(self, payload: dict, timestamp: int | None = None) -> str:
        return sign_payload(payload, self._webhook_secret, timestamp)

    def drain_webhooks(self, *, duplicate: bool = False, shuffle: bool = False, seed: int = 7) -> list[dict]:
        with self._lock:
            deliveries = list(self._outbox)
            self._outbox.clear()
        if duplicate:
            deliveries = [item for item in deliveries for _copy in (0, 1)]
        if shuffle:
            random.Random(seed).shuffle(deliveries)
        return deliveries

    def pending_webhook_count(self) -> int:
        with self._lock:
            return len(self._outbox)

    # -- gateway contract --------------------------------------------------

    @staticmethod
    def _error_message(status: PaymentStatus, status_detail: str | None) -> str | None:
        if status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
            return payment_status_detail_message(status_detail)
        return None

    def _next_external_id(self) -> str:
        if self._queued_ids:
            return self._queued_ids.pop(0)
        return f"sim_{next(self._sequence):06d}"

    @staticmethod
    def _instructions(method: PaymentMethod, external_id: str) -> dict[str, str | None]:
        if method is PaymentMethod.PIX:
            qr_code = f"00020126360014br.gov.bcb.pix0114{external_id}5204000053039865802BR6304SIMU"
            return {
                "qr_code": qr_code,
                "qr_code_base64": base64.b64encode(qr_code.encode("ascii")).decode("ascii"),
                "ticket_url": f"{INSTRUCTIONS_BASE_URL}/pix/{external_id}",
            }
        if method is PaymentMethod.BOLETO:
            return {"qr_code": None, "qr_code_base64": None, "ticket_url": f"{INSTRUCTIONS_BASE_URL}/boleto/{external_id}"}
        return {"qr_code": None, "qr_code_base64": None, "ticket_url": None}

    def _outcome(self, request: PaymentRequest) -> tuple[PaymentStatus, str | None]:
        if request.payment_method is not PaymentMethod.CREDIT_CARD:
            return PaymentStatus.PENDING, "pending_waiting_payment"
        token = str(request.card_token or "").lower()
        if token.startswith("tok_rejected"):
            suffix = token[len("tok_rejected"):].strip("_")
            return PaymentStatus.REJECTED, f"cc_rejected_{suffix}" if suffix else "cc_rejected_other_reason"
        if token == "tok_pending":
            return PaymentStatus.IN_PROCESS, "pending_contingency"
        return PaymentStatus.APPROVED, "accredited"

    def charge(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        token = str(request.card_token or "").lower()
        with self._lock:
            self.charge_calls += 1
            existing_id = self._by_key.get(idempotency_key)
            if existing_id is not None:
                return self._payments[existing_id]
            if token == "tok_unreachable":
                observe_gateway_error(PROVIDER, "transport")
                raise GatewayError("Simulador indisponivel.", code="transport")
            if token == "tok_declined":
                observe_gateway_error(PROVIDER, "cc_rejected_bad_filled_other")
                raise GatewayRejected(
                    "Simulador recusou a requisicao.",
                    status_detail="cc_rejected_bad_filled_other",
                    user_message=payment_status_detail_message("cc_rejected_bad_filled_other"),
                )

            status, status_detail = self._outcome(request)
            external_id = self._next_external_id()
            result = PaymentResult(
                external_id=external_id,
                status=status,
                amount=request.amount,
                payment_method=request.payment_method.value,
                payer_email=request.payer_email,
                payer_tax_id=request.payer_tax_id,
                status_detail=status_detail,
                error_message=self._error_message(status, status_detail),
                external_reference=(request.external_reference or idempotency_key)[:256],
                created_at=_utc_now(),
                approved_at=_utc_now() if status is PaymentStatus.APPROVED else None,
                metadata=dict(request.metadata),
                **self._instructions(request.payment_method, external_id),
            )
            self._payments[result.external_id] = result
            self._by_key[idempotency_key] = result.external_id

        if token == "tok_timeout":
            observe_gateway_error(PROVIDER, "timeout")
            raise GatewayError("Timeout simulado apos criar a cobranca.", code="timeout")
        observe_gateway_charge(PROVIDER, result.status.value)
        return result

    def query_status(self, external_id: str) -> PaymentResult:
        with self._lock:
            self.query_calls += 1
            if self.fail_next_queries > 0:
                self.fail_next_queries -= 1
                raise GatewayError("Consulta simulada falhou.", code="transport")
            result = self._payments.get(str(external_id))
        if result is None:
            raise GatewayError(f"Pagamento {external_id} nao encontrado.", code="payment_not_found")
        return result

    def find_by_reference(self, idempotency_key: str) -> PaymentResult | None:
        with self._lock:
            external_id = self._by_key.get(idempotency_key)
            return self._payments.get(external_id) if external_id else None

    def verify_webhook_signature(self, payload: dict, signature: str | None) -> bool:
        return verify_signature(payload, signature, self._webhook_secret, allow_unsigned=self._allow_unsigned)

    def parse_webhook(self, payload: dict) -> PaymentResult:
        external_id = webhook_data_id(payload)
        if not external_id:
            raise GatewayError("Webhook sem data.id.", code="webhook_without_payment")
        data = payload.get("data") or {}
        if not data.get("status"):
            return self.query_status(external_id)
        # Embedded status models a delivery carrying the state at send time,
        # which may be older than the current one.
        current = self.query_status(external_id)
        status = PaymentStatus.parse(data.get("status"))
        detail = data.get("status_detail")
        return replace(
            current,
            status=status,
            status_detail=detail,
            error_message=self._error_message(status, detail),
            approved_at=current.approved_at if status is PaymentStatus.APPROVED else None,
        )
