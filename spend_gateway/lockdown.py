"""Storage circuit breaker.

Every approval, revocation and spend is a read-modify-write against the
permission store. When SQLite becomes slow or starts failing, continuing to
accept requests risks lost updates or stalled writers holding the write lock.
The breaker trips into a lockdown window during which all store operations
are refused with :class:`StorageLockdownError`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger("spend_gateway")


class StorageLockdownError(RuntimeError):
    """Raised while the store is in lockdown after repeated degradation."""


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - SPG_DB_LATENCY_THRESHOLD_MS: trip on any operation slower than this
      (0 disables the latency trip).
    - SPG_DB_FAILURE_THRESHOLD: number of failures required to trip.
    - SPG_DB_LOCKDOWN_SECONDS: duration of the lockdown window.
    - SPG_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect / busy timeout.
    - SPG_DB_ERROR_STRICT: if '1', treat any OperationalError as failure.
    """

    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env_int("SPG_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _env_int("SPG_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _env_int("SPG_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _env_float("SPG_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        strict = os.getenv("SPG_DB_ERROR_STRICT", "1").strip().lower() not in ("0", "false", "no")

        return cls(
            latency_threshold_ms=max(0, latency),
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and slow operations; trips into lockdown."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until_monotonic: float = 0.0
        self.trips = 0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("storage lockdown active")

    def _trip(self, reason: str) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        self.trips += 1
        logger.warning("storage circuit breaker tripped (%s); lockdown for %ss", reason, self.config.lockdown_seconds)

    def record_success(self) -> None:
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        threshold = self.config.latency_threshold_ms
        if threshold and elapsed_ms >= float(threshold):
            self._failure_count += 1
            self._trip(f"slow operation {elapsed_ms:.0f}ms")

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._trip(type(exc).__name__ if exc is not None else "failure")

    def should_treat_operational_error_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "database is locked" in msg or "database is busy" in msg

    def state(self) -> Dict[str, Any]:
        return {
            "lockdown_active": self.is_lockdown_active(),
            "failure_count": self._failure_count,
            "trips": self.trips,
        }
