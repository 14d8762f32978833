from __future__ import annotations

from typing import Any, Dict

from assinaturas.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class InvalidTransition(UserActionError):
    """A (status, event) pair outside the subscription transition table."""

    default_code = "subscription_transition_invalid"
    default_message_key = "subscription_transition_invalid"
    default_http_status = 409
    default_critical = False


class ConcurrencyConflict(AppError):
    """Optimistic-lock version mismatch. Retried by the use cases with fresh state."""

    default_code = "concurrency_conflict"
    default_message_key = "concurrency_conflict"
    default_http_status = 409
    default_critical = False


class SignatureError(AppError):
    default_code = "webhook_signature_invalid"
    default_message_key = "webhook_signature_invalid"
    default_http_status = 401
    default_critical = False


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "payment_gateway_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
