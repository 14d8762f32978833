from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Mapping


STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


def _bounded_float(value, default: float, minimum: float, maximum: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


def _bounded_int(value, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


class GatewayCircuitBreaker:
    """Error-rate breaker shared by every call to the payment provider.

    Only transport failures count as failures; a declined card is a
    successful call from the breaker's point of view.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._enabled = True
        self._error_rate_threshold = 0.6
        self._min_samples = 5
        self._window_seconds = 120
        self._open_seconds = 30
        self._half_open_max_calls = 1

        self._state = STATE_CLOSED
        self._opened_at = 0.0
        self._half_open_calls = 0
        self._last_failure_code: str | None = None
        self._calls: deque[tuple[float, bool]] = deque()

    def configure(
        self,
        *,
        enabled: bool,
        error_rate_threshold: float,
        min_samples: int,
        window_seconds: int,
        open_seconds: int,
        half_open_max_calls: int,
    ) -> None:
        with self._lock:
            self._enabled = bool(enabled)
            self._error_rate_threshold = _bounded_float(error_rate_threshold, 0.6, 0.05, 1.0)
            self._min_samples = _bounded_int(min_samples, 5, 1, 1000)
            self._window_seconds = _bounded_int(window_seconds, 120, 5, 3600)
            self._open_seconds = _bounded_int(open_seconds, 30, 1, 3600)
            self._half_open_max_calls = _bounded_int(half_open_max_calls, 1, 1, 100)
            if not self._enabled:
                self._reset_state()

    def configure_from(self, config: Mapping) -> None:
        self.configure(
            enabled=bool(config.get("BILLING_CIRCUIT_ENABLED", True)),
            error_rate_threshold=config.get("BILLING_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6),
            min_samples=config.get("BILLING_CIRCUIT_MIN_SAMPLES", 5),
            window_seconds=config.get("BILLING_CIRCUIT_WINDOW_SECONDS", 120),
            open_seconds=config.get("BILLING_CIRCUIT_OPEN_SECONDS", 30),
            half_open_max_calls=config.get("BILLING_CIRCUIT_HALF_OPEN_MAX_CALLS", 1),
        )

    def _reset_state(self) -> None:
        self._state = STATE_CLOSED
        self._opened_at = 0.0
        self._half_open_calls = 0
        self._calls.clear()

    def _trim(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._calls and self._calls[0][0] < cutoff:
            self._calls.popleft()

    def _trip(self, now: float) -> None:
        self._state = STATE_OPEN
        self._opened_at = now
        self._half_open_calls = 0

    def _window_stats(self, now: float) -> tuple[int, int, float]:
        self._trim(now)
        samples = len(self._calls)
        if samples <= 0:
            return 0, 0, 0.0
        failures = sum(1 for _ts, ok in self._calls if not ok)
        return samples, failures, float(failures) / float(samples)

    def before_call(self) -> tuple[bool, str]:
        now = time.monotonic()
        with self._lock:
            if not self._enabled:
                return True, "disabled"
            if self._state == STATE_OPEN:
                if (now - self._opened_at) < self._open_seconds:
                    return False, STATE_OPEN
                self._state = STATE_HALF_OPEN
                self._half_open_calls = 0
            if self._state == STATE_HALF_OPEN:
                if self._half_open_calls >= self._half_open_max_calls:
                    return False, STATE_HALF_OPEN
                self._half_open_calls += 1
                return True, STATE_HALF_OPEN
            return True, STATE_CLOSED

    def record_success(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._enabled:
                return
            if self._state == STATE_HALF_OPEN:
                self._reset_state()
                return
            self._calls.append((now, True))
            self._trim(now)

    def record_failure(self, code: str | None = None) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._enabled:
                return
            self._last_failure_code = str(code or "").strip() or None
            if self._state == STATE_OPEN:
                return
            self._calls.append((now, False))
            if self._state == STATE_HALF_OPEN:
                self._trim(now)
                self._trip(now)
                return
            samples, _failures, failure_rate = self._window_stats(now)
            if samples >= self._min_samples and failure_rate >= self._error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        now = time.monotonic()
        with self._lock:
            samples, failures, failure_rate = self._window_stats(now)
            open_for = 0.0
            if self._state == STATE_OPEN and self._opened_at > 0.0:
                open_for = max(0.0, now - self._opened_at)
            return {
                "state": self._state,
                "enabled": self._enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failure_rate, 4),
                "opened_seconds_ago": round(open_for, 2),
                "half_open_calls": int(self._half_open_calls),
                "last_failure_code": self._last_failure_code,
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._enabled = True
            self._last_failure_code = None
            self._reset_state()


_GATEWAY_CIRCUIT_BREAKER = GatewayCircuitBreaker()


def get_gateway_circuit_breaker() -> GatewayCircuitBreaker:
    return _GATEWAY_CIRCUIT_BREAKER


def gateway_circuit_snapshot() -> dict:
    return _GATEWAY_CIRCUIT_BREAKER.snapshot()


def reset_gateway_circuit_breaker_for_tests() -> None:
    _GATEWAY_CIRCUIT_BREAKER.reset_for_tests()
