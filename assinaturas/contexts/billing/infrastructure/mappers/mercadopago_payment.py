from __future__ import annotations

from decimal import Decimal
from typing import Any

from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import (
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    parse_timestamp,
    tax_id_type,
)
from assinaturas.ui_strings import payment_status_detail_message


_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.IN_PROCESS,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.IN_PROCESS,
    "in_mediation": PaymentStatus.IN_PROCESS,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
}


def map_status(raw_status: object | None) -> PaymentStatus:
    """Provider status to internal vocabulary; unknown values stay pending."""
    return _STATUS_MAP.get(str(raw_status or "").strip().lower(), PaymentStatus.PENDING)


def map_request_to_payload(
    request: PaymentRequest,
    idempotency_key: str,
    *,
    statement_descriptor: str | None = None,
    notification_url: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "transaction_amount": float(request.amount.to_decimal()),
        "description": request.description[:255],
        "payer": {"email": request.payer_email},
        "external_reference": (request.external_reference or idempotency_key)[:256],
    }
    if request.payment_method is PaymentMethod.CREDIT_CARD:
        # The card token already identifies the card brand; sending a
        # payment_method_id alongside it makes the provider reject the BIN.
        payload["token"] = request.card_token
        payload["installments"] = int(request.installments)
    elif request.payment_method is PaymentMethod.PIX:
        payload["payment_method_id"] = "pix"
    else:
        payload["payment_method_id"] = "bolbradesco"
    if request.payer_tax_id:
        payload["payer"]["identification"] = {"type": tax_id_type(request.payer_tax_id), "number": request.payer_tax_id}
    if request.metadata:
        payload["metadata"] = dict(request.metadata)
    if statement_descriptor:
        payload["statement_descriptor"] = str(statement_descriptor)[:22]
    if notification_url:
        payload["notification_url"] = notification_url
    return payload


def _amount(payment: dict[str, Any], currency: str) -> Money:
    raw = payment.get("transaction_amount")
    if raw is None or raw == "":
        return Money.zero(currency)
    if isinstance(raw, float):
        raw = Decimal(repr(raw))
    return Money.from_decimal(raw if isinstance(raw, Decimal) else str(raw), currency)


def _payment_instructions(payment: dict[str, Any]) -> dict[str, str | None]:
    interaction = payment.get("point_of_interaction") if isinstance(payment.get("point_of_interaction"), dict) else {}
    transaction_data = interaction.get("transaction_data") if isinstance(interaction.get("transaction_data"), dict) else {}
    details = payment.get("transaction_details") if isinstance(payment.get("transaction_details"), dict) else {}
    # Boleto links arrive in transaction_details, pix links in transaction_data.
    ticket_url = transaction_data.get("ticket_url") or details.get("external_resource_url")
    return {
        "qr_code": str(transaction_data.get("qr_code") or "").strip() or None,
        "qr_code_base64": str(transaction_data.get("qr_code_base64") or "").strip() or None,
        "ticket_url": str(ticket_url or "").strip() or None,
    }


def map_payment_to_result(payment: dict[str, Any]) -> PaymentResult:
    """One mapping for synchronous responses, status queries and webhook resources."""
    data = dict(payment or {})
    status = map_status(data.get("status"))
    currency = str(data.get("currency_id") or "BRL")
    payer = data.get("payer") if isinstance(data.get("payer"), dict) else {}
    identification = payer.get("identification") if isinstance(payer.get("identification"), dict) else {}
    status_detail = str(data.get("status_detail") or "").strip() or None

    error_message = None
    if status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
        error_message = payment_status_detail_message(status_detail)

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return PaymentResult(
        external_id=str(data.get("id") or ""),
        status=status,
        amount=_amount(data, currency),
        payment_method=str(data.get("payment_method_id") or data.get("payment_type_id") or "unknown"),
        payer_email=str(payer.get("email") or "").strip() or None,
        payer_tax_id=str(identification.get("number") or "").strip() or None,
        status_detail=status_detail,
        error_message=error_message,
        external_reference=str(data.get("external_reference") or "").strip() or None,
        created_at=parse_timestamp(data.get("date_created")),
        approved_at=parse_timestamp(data.get("date_approved")) if status is PaymentStatus.APPROVED else None,
        metadata=dict(metadata),
        **_payment_instructions(data),
    )


def map_error_response(payload: dict[str, Any] | None) -> tuple[str | None, str]:
    """Return ``(status_detail, user_message)`` for a 4xx body."""
    data = dict(payload or {})
    detail = None
    causes = data.get("cause")
    if isinstance(causes, list) and causes:
        first = causes[0] if isinstance(causes[0], dict) else {}
        detail = str(first.get("code") or first.get("description") or "").strip() or None
    if detail is None:
        detail = str(data.get("error") or "").strip() or None
    message = str(data.get("message") or "").strip()
    if detail and detail.startswith("cc_rejected"):
        return detail, payment_status_detail_message(detail)
    return detail, message or payment_status_detail_message(detail)
