from __future__ import annotations

from .mercadopago_payment import map_error_response, map_payment_to_result, map_request_to_payload, map_status

__all__ = [
    "map_error_response",
    "map_payment_to_result",
    "map_request_to_payload",
    "map_status",
]
