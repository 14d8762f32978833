from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_GATEWAY_DURATION_BUCKETS_MS = (25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._gateway_charge_total: Dict[tuple[str, str], int] = {}
            self._gateway_error_total: Dict[tuple[str, str], int] = {}
            self._gateway_call_duration_ms: Dict[str, dict] = {}
            self._webhook_received_total: Dict[tuple[str, str], int] = {}
            self._webhook_signature_failure_total: Dict[str, int] = {}
            self._reconciliation_total: Dict[str, int] = {}
            self._concurrency_conflict_total = 0
            self._domain_event_emitted_total: Dict[str, int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _increment(counter: dict, key, amount: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + amount

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._increment(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_gateway_charge(self, provider: str, status: str) -> None:
        key = (str(provider or "unknown"), str(status or "unknown"))
        with self._lock:
            self._increment(self._gateway_charge_total, key)

    def observe_gateway_error(self, provider: str, code: str) -> None:
        key = (str(provider or "unknown"), str(code or "unknown"))
        with self._lock:
            self._increment(self._gateway_error_total, key)

    def observe_gateway_call(self, operation: str, duration_ms: float) -> None:
        operation_key = str(operation or "unknown").strip() or "unknown"
        with self._lock:
            histogram = self._gateway_call_duration_ms.setdefault(
                operation_key,
                self._new_histogram_state(_GATEWAY_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _GATEWAY_DURATION_BUCKETS_MS)

    def observe_webhook(self, provider: str, outcome: str) -> None:
        key = (str(provider or "unknown"), str(outcome or "unknown"))
        with self._lock:
            self._increment(self._webhook_received_total, key)

    def observe_webhook_signature_failure(self, provider: str) -> None:
        with self._lock:
            self._increment(self._webhook_signature_failure_total, str(provider or "unknown"))

    def observe_reconciliation(self, outcome: str) -> None:
        with self._lock:
            self._increment(self._reconciliation_total, str(outcome or "unknown"))

    def observe_concurrency_conflict(self) -> None:
        with self._lock:
            self._concurrency_conflict_total += 1

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._increment(self._domain_event_emitted_total, key)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "gateway": {
                    "charges": {f"{p}:{s}": v for (p, s), v in sorted(self._gateway_charge_total.items())},
                    "errors": {f"{p}:{c}": v for (p, c), v in sorted(self._gateway_error_total.items())},
                },
                "webhooks": {
                    "received": {f"{p}:{o}": v for (p, o), v in sorted(self._webhook_received_total.items())},
                    "signature_failures": dict(sorted(self._webhook_signature_failure_total.items())),
                },
                "reconciliation": dict(sorted(self._reconciliation_total.items())),
                "concurrency_conflicts": int(self._concurrency_conflict_total),
                "domain_events": dict(sorted(self._domain_event_emitted_total.items())),
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:

            def _copy_hist(histogram: dict) -> dict:
                return {
                    "count": int(histogram["count"]),
                    "sum": float(histogram["sum"]),
                    "buckets": {label: int(count) for label, count in histogram["buckets"].items()},
                }

            return {
                "http_request_total": sorted(self._http_request_total.items()),
                "http_request_duration_ms": [
                    (key, _copy_hist(hist)) for key, hist in sorted(self._http_request_duration_ms.items())
                ],
                "gateway_charge_total": sorted(self._gateway_charge_total.items()),
                "gateway_error_total": sorted(self._gateway_error_total.items()),
                "gateway_call_duration_ms": [
                    (key, _copy_hist(hist)) for key, hist in sorted(self._gateway_call_duration_ms.items())
                ],
                "webhook_received_total": sorted(self._webhook_received_total.items()),
                "webhook_signature_failure_total": sorted(self._webhook_signature_failure_total.items()),
                "reconciliation_total": sorted(self._reconciliation_total.items()),
                "concurrency_conflict_total": int(self._concurrency_conflict_total),
                "domain_event_emitted_total": sorted(self._domain_event_emitted_total.items()),
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_gateway_charge(provider: str, status: str) -> None:
    _METRICS.observe_gateway_charge(provider, status)


def observe_gateway_error(provider: str, code: str) -> None:
    _METRICS.observe_gateway_error(provider, code)


def observe_gateway_call(operation: str, duration_ms: float) -> None:
    _METRICS.observe_gateway_call(operation, duration_ms)


def observe_webhook(provider: str, outcome: str) -> None:
    _METRICS.observe_webhook(provider, outcome)


def observe_webhook_signature_failure(provider: str) -> None:
    _METRICS.observe_webhook_signature_failure(provider)


def observe_reconciliation(outcome: str) -> None:
    _METRICS.observe_reconciliation(outcome)


def observe_concurrency_conflict() -> None:
    _METRICS.observe_concurrency_conflict()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, histogram: dict, labels: dict[str, object]) -> None:
    for le_label, bucket_value in histogram["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(histogram["sum"]), labels=labels))
    lines.append(_prom_line(f"{name}_count", int(histogram["count"]), labels=labels))


def prometheus_metrics_text(*, charges_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for (method, route, status), value in snapshot["http_request_total"]:
        lines.append(
            _prom_line("http_request_total", int(value), labels={"method": method, "route": route, "status": status})
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for (method, route), hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": method, "route": route})

    lines.append("# HELP billing_gateway_charge_total Charges answered by the payment provider, by status.")
    lines.append("# TYPE billing_gateway_charge_total counter")
    for (provider, status), value in snapshot["gateway_charge_total"]:
        lines.append(
            _prom_line("billing_gateway_charge_total", int(value), labels={"provider": provider, "status": status})
        )

    lines.append("# HELP billing_gateway_error_total Gateway calls with unknown outcome or explicit decline.")
    lines.append("# TYPE billing_gateway_error_total counter")
    for (provider, code), value in snapshot["gateway_error_total"]:
        lines.append(_prom_line("billing_gateway_error_total", int(value), labels={"provider": provider, "code": code}))

    lines.append("# HELP billing_gateway_call_duration_ms Payment provider call duration in milliseconds.")
    lines.append("# TYPE billing_gateway_call_duration_ms histogram")
    for operation, hist in snapshot["gateway_call_duration_ms"]:
        _prom_histogram(lines, "billing_gateway_call_duration_ms", hist, {"operation": operation})

    lines.append("# HELP billing_webhook_received_total Provider callbacks by outcome.")
    lines.append("# TYPE billing_webhook_received_total counter")
    for (provider, outcome), value in snapshot["webhook_received_total"]:
        lines.append(
            _prom_line("billing_webhook_received_total", int(value), labels={"provider": provider, "outcome": outcome})
        )

    lines.append("# HELP billing_webhook_signature_failure_total Callbacks rejected by signature check.")
    lines.append("# TYPE billing_webhook_signature_failure_total counter")
    for provider, value in snapshot["webhook_signature_failure_total"]:
        lines.append(_prom_line("billing_webhook_signature_failure_total", int(value), labels={"provider": provider}))

    lines.append("# HELP billing_reconciliation_total Reconciliation attempts by outcome.")
    lines.append("# TYPE billing_reconciliation_total counter")
    for outcome, value in snapshot["reconciliation_total"]:
        lines.append(_prom_line("billing_reconciliation_total", int(value), labels={"outcome": outcome}))

    lines.append("# HELP billing_concurrency_conflict_total Optimistic-lock conflicts retried.")
    lines.append("# TYPE billing_concurrency_conflict_total counter")
    lines.append(_prom_line("billing_concurrency_conflict_total", int(snapshot["concurrency_conflict_total"])))

    lines.append("# HELP domain_event_emitted_total Domain events published by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in snapshot["domain_event_emitted_total"]:
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    charges = dict(charges_state or {})
    lines.append("# HELP billing_charges_open Charges still waiting for a final provider status.")
    lines.append("# TYPE billing_charges_open gauge")
    lines.append(_prom_line("billing_charges_open", int(charges.get("open_charges") or 0)))
    lines.append("# HELP billing_charges_oldest_open_age_seconds Age of the oldest open charge.")
    lines.append("# TYPE billing_charges_oldest_open_age_seconds gauge")
    lines.append(
        _prom_line("billing_charges_oldest_open_age_seconds", int(charges.get("oldest_open_age_seconds") or 0))
    )

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _parse_timestamp(value) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def charges_health(db) -> dict:
    row = db.execute(
        """
        SELECT COUNT(*) AS open_charges, MIN(created_at) AS oldest_created_at
        FROM payment_charges
        WHERE status IS NULL OR status IN ('pending', 'in_process')
        """
    ).fetchone()
    open_charges = int(row["open_charges"] or 0) if row else 0
    oldest = _parse_timestamp(row["oldest_created_at"]) if row else None
    oldest_age = 0
    if oldest is not None:
        oldest_age = max(0, int((datetime.now(timezone.utc) - oldest).total_seconds()))
    return {
        "open_charges": open_charges,
        "oldest_open_age_seconds": oldest_age,
    }
