from __future__ import annotations

import json
import os
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from decimal import Decimal

from flask import current_app

from assinaturas.observability import observe_gateway_call


class MercadoPagoError(RuntimeError):
    """HTTP-level failure talking to Mercado Pago.

    ``status_code`` is None for transport failures (DNS, refused, timeout).
    """

    def __init__(self, message: str, *, status_code: int | None = None, payload: dict | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = dict(payload or {})

    @property
    def is_transport(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


def create_payment(payload: dict, idempotency_key: str) -> dict:
    # POST is never retried here: the caller retries with the same idempotency key.
    return _request_json(
        "POST",
        "/v1/payments",
        payload=payload,
        extra_headers={"X-Idempotency-Key": idempotency_key},
        allow_retry=False,
        operation="create_payment",
    )


def get_payment(payment_id: str) -> dict:
    quoted = urllib.parse.quote(str(payment_id), safe="")
    return _request_json("GET", f"/v1/payments/{quoted}", allow_retry=True, operation="get_payment")


def search_payments_by_reference(external_reference: str) -> list[dict]:
    query = urllib.parse.urlencode(
        {"external_reference": external_reference, "sort": "date_created", "criteria": "desc"}
    )
    response = _request_json("GET", f"/v1/payments/search?{query}", allow_retry=True, operation="search_payments")
    results = response.get("results") if isinstance(response, dict) else None
    if not isinstance(results, list):
        return []
    return [item for item in results if isinstance(item, dict)]


def _request_json(
    method: str,
    path: str,
    payload: dict | None = None,
    extra_headers: dict | None = None,
    allow_retry: bool = False,
    operation: str = "request",
) -> dict:
    base_url = str(_get_config("MERCADOPAGO_BASE_URL", "https://api.mercadopago.com")).rstrip("/")
    url = f"{base_url}{path}"
    timeout = _int_config("BILLING_GATEWAY_TIMEOUT_SECONDS", 10)
    attempts = max(1, _int_config("BILLING_GATEWAY_RETRY_ATTEMPTS", 2)) if allow_retry else 1
    backoff_ms = _int_config("BILLING_GATEWAY_RETRY_BACKOFF_MS", 300)

    headers = {"Accept": "application/json"}
    token = _get_config("MERCADOPAGO_ACCESS_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    headers.update(extra_headers or {})

    data = None
    if payload is not None:
        headers["Content-Type"] = "application/json"
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str).encode("utf-8")

    request = urllib.request.Request(url, data=data, headers=headers, method=method.upper())

    context = None
    if not _bool_config("MERCADOPAGO_VERIFY_SSL", True):
        context = ssl._create_unverified_context()

    for attempt in range(attempts):
        started = time.perf_counter()
        try:
            with urllib.request.urlopen(request, timeout=timeout, context=context) as response:
                body = response.read().decode("utf-8")
                observe_gateway_call(operation, (time.perf_counter() - started) * 1000.0)
                if not body:
                    return {}
                parsed = json.loads(body, parse_float=Decimal)
                return parsed if isinstance(parsed, dict) else {"results": parsed}
        except urllib.error.HTTPError as exc:  # noqa: PERF203
            observe_gateway_call(operation, (time.perf_counter() - started) * 1000.0)
            error_body = exc.read().decode("utf-8") if exc.fp else ""
            should_retry = allow_retry and attempt < attempts - 1 and exc.code >= 500
            if should_retry:
                time.sleep(backoff_ms / 1000)
                continue
            raise MercadoPagoError(
                f"Mercado Pago HTTP {exc.code}: {error_body[:200]}",
                status_code=int(exc.code),
                payload=_safe_json(error_body),
            ) from exc
        except urllib.error.URLError as exc:
            observe_gateway_call(operation, (time.perf_counter() - started) * 1000.0)
            should_retry = allow_retry and attempt < attempts - 1
            if should_retry:
                time.sleep(backoff_ms / 1000)
                continue
            raise MercadoPagoError(f"Erro de conexao Mercado Pago: {exc.reason}") from exc
        except TimeoutError as exc:
            observe_gateway_call(operation, (time.perf_counter() - started) * 1000.0)
            raise MercadoPagoError("Timeout ao chamar Mercado Pago.") from exc
        except json.JSONDecodeError as exc:
            raise MercadoPagoError("Mercado Pago retornou JSON invalido.", status_code=502) from exc

    raise MercadoPagoError("Falha ao chamar Mercado Pago.")


def _safe_json(body: str) -> dict:
    if not body:
        return {}
    try:
        parsed = json.loads(body, parse_float=Decimal)
    except json.JSONDecodeError:
        return {"message": body[:200]}
    return parsed if isinstance(parsed, dict) else {}


def _get_config(key: str, default: object | None = None) -> object | None:
    try:
        if key in current_app.config:
            value = current_app.config.get(key)
            if value is not None:
                return value
        return os.environ.get(key, default)
    except RuntimeError:
        return os.environ.get(key, default)


def _int_config(key: str, default: int) -> int:
    value = _get_config(key, default)
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _bool_config(key: str, default: bool) -> bool:
    value = _get_config(key, default)
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
