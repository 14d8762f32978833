"""Webhook signature scheme shared by the Mercado Pago adapter and the simulator.

Header format: ``sha256=<hex>,ts=<unix seconds>``. The digest is
HMAC-SHA256 over ``<data.id><ts>`` keyed by the webhook secret.
"""

from __future__ import annotations

import hashlib
import hmac
import time


def webhook_data_id(payload: dict) -> str | None:
    data = (payload or {}).get("data")
    if not isinstance(data, dict):
        return None
    value = str(data.get("id") or "").strip()
    return value or None


def parse_signature_header(header: str | None) -> tuple[str, str] | None:
    parts: dict[str, str] = {}
    for chunk in str(header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip().lower()] = value.strip()
    digest = parts.get("sha256") or parts.get("v1")
    timestamp = parts.get("ts")
    if not digest or not timestamp:
        return None
    return digest, timestamp


def compute_signature(data_id: str, timestamp: str, secret: str) -> str:
    message = f"{data_id}{timestamp}".encode("utf-8")
    return hmac.new(str(secret).encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_payload(payload: dict, secret: str, timestamp: int | None = None) -> str:
    ts = str(int(time.time() if timestamp is None else timestamp))
    return f"sha256={compute_signature(webhook_data_id(payload) or '', ts, secret)},ts={ts}"


def verify_signature(
    payload: dict,
    header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 0,
    allow_unsigned: bool = False,
    now: float | None = None,
) -> bool:
    if not isinstance(payload, dict) or not payload.get("type") or not webhook_data_id(payload):
        return False
    if not str(header or "").strip() or not str(secret or "").strip():
        return bool(allow_unsigned)

    parsed = parse_signature_header(header)
    if parsed is None:
        return False
    received, timestamp = parsed
    try:
        ts_value = int(timestamp)
    except ValueError:
        return False
    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - ts_value) > tolerance_seconds:
            return False
    expected = compute_signature(webhook_data_id(payload) or "", timestamp, str(secret))
    return hmac.compare_digest(expected, received.lower())
