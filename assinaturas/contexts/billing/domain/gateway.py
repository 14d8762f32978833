from __future__ import annotations

from abc import ABC, abstractmethod

from assinaturas.contexts.billing.domain.payment import PaymentRequest, PaymentResult


class GatewayError(RuntimeError):
    """Transport failure: the charge outcome is unknown.

    Safe to retry with the same idempotency key; never a decline.
    """

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or "gateway_unavailable"


class GatewayRejected(RuntimeError):
    """The provider explicitly refused the charge request."""

    def __init__(
        self,
        message: str,
        *,
        status_detail: str | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_detail = str(status_detail or "").strip() or None
        self.user_message = str(user_message or "").strip() or message


class PaymentGateway(ABC):
    provider_name: str = "unknown"

    @abstractmethod
    def charge(self, request: PaymentRequest, idempotency_key: str) -> PaymentResult:
        raise NotImplementedError

    @abstractmethod
    def query_status(self, external_id: str) -> PaymentResult:
        raise NotImplementedError

    @abstractmethod
    def find_by_reference(self, idempotency_key: str) -> PaymentResult | None:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook_signature(self, payload: dict, signature: str | None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, payload: dict) -> PaymentResult:
        raise NotImplementedError

    @staticmethod
    def webhook_event_id(payload: dict) -> str | None:
        """Delivery id used for at-least-once dedup; None when the payload carries none."""
        event_id = str((payload or {}).get("id") or "").strip()
        return event_id or None
