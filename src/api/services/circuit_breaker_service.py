"""
Circuit Breaker Service

Per-dependency circuit breakers with closed/open/half-open states and manual
open/close/reset operations.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(message or f"Circuit breaker is OPEN for {name}. Service unavailable.")
        self.circuit = name


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    half_open_max_calls: int = 3
    timeout_seconds: float = 30.0
    monitoring_window_seconds: float = 60.0
    error_filter: Callable[[BaseException], bool] = field(default=lambda error: True)


class CircuitBreaker:
    """Single named breaker. State changes never span an await."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CLOSED
        self.failures = 0
        self.successes = 0
        self.total_calls = 0
        self.rejected_calls = 0
        self.half_open_calls = 0
        self.opened_at: Optional[float] = None
        self.last_failure_time: Optional[float] = None
        self.last_success_time: Optional[float] = None
        self._failure_timestamps: List[float] = []

    def admit(self) -> None:
        """Check state and reserve a slot for one call, or raise CircuitOpenError."""
        self.total_calls += 1
        if self.state == OPEN:
            if self.opened_at is not None and time.monotonic() - self.opened_at >= self.config.reset_timeout_seconds:
                self._transition_to_half_open()
            else:
                self.rejected_calls += 1
                logger.warning("[Circuit] %s is OPEN, request rejected (failures=%s)", self.name, self.failures)
                raise CircuitOpenError(self.name)

        if self.state == HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                self.rejected_calls += 1
                raise CircuitOpenError(self.name, f"Circuit breaker HALF-OPEN limit reached for {self.name}.")
            self.half_open_calls += 1

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        self.admit()
        try:
            result = await asyncio.wait_for(fn(), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.record_failure()
            raise TimeoutError(f"Circuit breaker timeout for {self.name}") from exc
        except Exception as exc:
            if self.config.error_filter(exc):
                self.record_failure()
            else:
                self.release()
            raise
        except asyncio.CancelledError:
            self.release()
            raise
        self.record_success()
        return result

    def release(self) -> None:
        """Give back a half-open slot for a call that ended without an outcome."""
        if self.state == HALF_OPEN and self.half_open_calls > 0:
            self.half_open_calls -= 1

    def record_success(self) -> None:
        self.successes += 1
        self.last_success_time = time.monotonic()
        self.half_open_calls = 0
        if self.state == HALF_OPEN:
            logger.info("[Circuit] %s closing after successful call", self.name)
            self.state = CLOSED
            self.failures = 0
            self._failure_timestamps = []

    def record_failure(self) -> None:
        now = time.monotonic()
        self.last_failure_time = now
        cutoff = now - self.config.monitoring_window_seconds
        self._failure_timestamps = [ts for ts in self._failure_timestamps if ts > cutoff]
        self._failure_timestamps.append(now)
        self.failures = len(self._failure_timestamps)

        if self.state == HALF_OPEN or self.failures >= self.config.failure_threshold:
            if self.state != OPEN:
                self._transition_to_open()

    def _transition_to_open(self) -> None:
        self.state = OPEN
        self.opened_at = time.monotonic()
        self.half_open_calls = 0
        logger.error(
            "[Circuit] %s opened (failures=%s, threshold=%s, reset_timeout=%ss)",
            self.name,
            self.failures,
            self.config.failure_threshold,
            self.config.reset_timeout_seconds,
        )

    def _transition_to_half_open(self) -> None:
        self.state = HALF_OPEN
        self.half_open_calls = 0
        logger.info("[Circuit] %s transitioning to HALF-OPEN", self.name)

    def open(self) -> None:
        self._transition_to_open()

    def close(self) -> None:
        self.state = CLOSED
        self.failures = 0
        self.half_open_calls = 0
        self.opened_at = None
        self._failure_timestamps = []
        logger.info("[Circuit] %s manually closed", self.name)

    def reset(self) -> None:
        self.close()
        self.successes = 0
        self.total_calls = 0
        self.rejected_calls = 0
        self.last_failure_time = None
        self.last_success_time = None

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failures,
            "successes": self.successes,
            "total_calls": self.total_calls,
            "rejected_calls": self.rejected_calls,
            "half_open_calls": self.half_open_calls,
        }


class CircuitBreakerRegistry:
    """Breakers keyed by dependency name, created lazily with shared defaults."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self.default_config = default_config or CircuitBreakerConfig()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.default_config)
            self._breakers[name] = breaker
        return breaker

    async def call(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await self.get(name).call(fn)

    def state(self, name: str) -> Optional[str]:
        breaker = self._breakers.get(name)
        return breaker.state if breaker else None

    def names(self) -> List[str]:
        return sorted(self._breakers)

    def open(self, name: str) -> None:
        self.get(name).open()

    def close(self, name: str) -> None:
        self.get(name).close()

    def reset(self, name: str) -> None:
        self.get(name).reset()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.stats() for name, breaker in sorted(self._breakers.items())}

    def health_check(self) -> Dict[str, Any]:
        unhealthy = [name for name, breaker in self._breakers.items() if breaker.state == OPEN]
        return {"healthy": not unhealthy, "open_circuits": sorted(unhealthy)}
