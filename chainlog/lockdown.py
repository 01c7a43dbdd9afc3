"""Fail-closed lockdown for the audit trail store.

Every store operation runs inside ``AuditTrailStore._db(op_name)``, which
consults the breaker before connecting and reports back afterwards:

- a sqlite error (other than an integrity violation) is a strike;
- an operation slower than the latency threshold is a strike;
- a fast, clean operation removes one strike.

When strikes reach the failure threshold the breaker opens for
``lockdown_seconds``. While open, every operation is refused before touching
the database, and the refusal names the operation that tripped it. Integrity
violations never count: a duplicate digest is an answer, not a degraded disk.

Store calls run on FastAPI's threadpool, so all state sits behind one lock.

Environment variables:
  - CHAINLOG_DB_LATENCY_THRESHOLD_MS: ops at or above this count as a strike.
  - CHAINLOG_DB_FAILURE_THRESHOLD: strikes needed to open the breaker.
  - CHAINLOG_DB_LOCKDOWN_SECONDS: how long the breaker stays open.
  - CHAINLOG_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect/busy timeout.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("chainlog.lockdown")

CAUSE_ERROR = "error"
CAUSE_SLOW = "slow"


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class CircuitBreakerConfig:
    latency_threshold_ms: int = 250
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env_number("CHAINLOG_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        failures = _env_number("CHAINLOG_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        lockdown = _env_number("CHAINLOG_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _env_number("CHAINLOG_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)
        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


@dataclass(frozen=True)
class Trip:
    """The strike that opened the breaker."""

    op_name: str
    cause: str
    detail: str

    def as_dict(self) -> Dict[str, str]:
        return {"op": self.op_name, "cause": self.cause, "detail": self.detail}


class StorageLockdownError(RuntimeError):
    """Raised by `DbCircuitBreaker.check` while the breaker is open."""

    def __init__(self, tripped_by: Optional[Trip], retry_after_s: float):
        super().__init__("LOCKDOWN_ACTIVE")
        self.tripped_by = tripped_by
        self.retry_after_s = retry_after_s


class DbCircuitBreaker:
    """Strike counter over store operations; opens into a timed lockdown."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._strikes = 0
        self._open_until = 0.0
        self._last_trip: Optional[Trip] = None
        self.trips_total = 0

    @property
    def strikes(self) -> int:
        with self._lock:
            return self._strikes

    def _remaining(self) -> float:
        return max(0.0, self._open_until - self._clock())

    def is_lockdown_active(self) -> bool:
        with self._lock:
            return self._remaining() > 0.0

    def check(self, op_name: str) -> None:
        """Refuse `op_name` while the breaker is open."""
        with self._lock:
            remaining = self._remaining()
            trip = self._last_trip
        if remaining > 0.0:
            logger.debug("Refusing %s during lockdown (%.1fs left)", op_name, remaining)
            raise StorageLockdownError(trip, remaining)

    def observe(self, op_name: str, elapsed_ms: float) -> None:
        """Report a completed operation and how long it took."""
        if elapsed_ms >= self.config.latency_threshold_ms:
            logger.warning("Slow storage op %s: %.1fms", op_name, elapsed_ms)
            self._strike(Trip(op_name, CAUSE_SLOW, f"{elapsed_ms:.1f}ms"))
            return
        with self._lock:
            if self._strikes > 0:
                self._strikes -= 1

    def record_failure(self, op_name: str, exc: Optional[BaseException] = None) -> None:
        detail = type(exc).__name__ if exc is not None else "unknown"
        self._strike(Trip(op_name, CAUSE_ERROR, detail))

    def _strike(self, trip: Trip) -> None:
        with self._lock:
            if self._remaining() > 0.0:
                return
            self._strikes += 1
            if self._strikes < self.config.failure_threshold:
                return
            self._open_until = self._clock() + float(self.config.lockdown_seconds)
            self._strikes = 0
            self._last_trip = trip
            self.trips_total += 1
        logger.error(
            "Storage lockdown for %ss, tripped by %s (%s: %s)",
            self.config.lockdown_seconds,
            trip.op_name,
            trip.cause,
            trip.detail,
        )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            remaining = self._remaining()
            return {
                "lockdown_active": remaining > 0.0,
                "strikes": self._strikes,
                "trips_total": self.trips_total,
                "last_trip": self._last_trip.as_dict() if self._last_trip else None,
                "retry_after_seconds": round(remaining, 3),
            }
