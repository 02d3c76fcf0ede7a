"""
Health Registry

Bundles the process-wide resilience state (circuit breakers, per-service
degradation, recovery history) into one object that is passed explicitly to
the pipeline services.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from .circuit_breaker_service import CircuitBreakerConfig, CircuitBreakerRegistry
from .degradation_service import CIRCUIT_NAMES, DegradationService, ServiceType
from .error_recovery_service import ErrorRecoveryService
from .retry_service import RetryPolicy, RetryService

logger = logging.getLogger(__name__)


class HealthRegistry:
    """Shared resilience state for one application instance."""

    def __init__(
        self,
        *,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.circuits = CircuitBreakerRegistry(circuit_config)
        self.degradation = DegradationService(
            self.circuits,
            down_after_failures=self.circuits.default_config.failure_threshold,
        )
        policy = retry_policy or RetryPolicy()
        retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.retry = RetryService(policy, **retry_kwargs)
        self.recovery = ErrorRecoveryService(
            self.degradation,
            max_attempts=policy.max_retries,
            retry_delay_ms=policy.initial_delay_ms,
            **retry_kwargs,
        )

    @classmethod
    def from_config(cls, resilience: Any) -> "HealthRegistry":
        """Build from a ResilienceConfig section."""
        return cls(
            circuit_config=CircuitBreakerConfig(
                failure_threshold=int(resilience.failure_threshold),
                reset_timeout_seconds=float(resilience.reset_timeout_seconds),
                half_open_max_calls=int(resilience.half_open_max_calls),
            ),
            retry_policy=RetryPolicy(
                max_retries=int(resilience.max_retries),
                initial_delay_ms=int(resilience.initial_delay_ms),
                max_delay_ms=int(resilience.max_delay_ms),
                multiplier=float(resilience.backoff_multiplier),
                jitter=float(resilience.jitter),
            ),
        )

    async def call(self, service: ServiceType, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run one gateway call through its circuit breaker and record the outcome."""
        service = ServiceType(service)
        try:
            result = await self.circuits.call(CIRCUIT_NAMES[service], fn)
        except Exception as e:
            self.degradation.handle_service_error(service, e)
            raise
        self.degradation.record_success(service)
        return result

    async def call_with_retry(self, service: ServiceType, fn: Callable[[], Awaitable[Any]], *, label: str = "") -> Any:
        """Circuit-guarded call retried with exponential backoff."""
        service = ServiceType(service)
        return await self.retry.execute(
            lambda: self.call(service, fn),
            label=label or service.value,
        )

    async def stream(self, service: ServiceType, factory: Callable[[], AsyncIterator[Any]]) -> AsyncIterator[Any]:
        """
        Circuit-guarded streaming call.

        Admission is checked before the upstream is opened; the outcome is
        recorded once the stream ends or fails. A consumer that stops early
        records nothing and gives back its half-open slot.
        """
        service = ServiceType(service)
        breaker = self.circuits.get(CIRCUIT_NAMES[service])
        breaker.admit()
        settled = False
        try:
            async for item in factory():
                yield item
            settled = True
        except Exception as e:
            settled = True
            if breaker.config.error_filter(e):
                breaker.record_failure()
            else:
                breaker.release()
            self.degradation.handle_service_error(service, e)
            raise
        finally:
            if not settled:
                breaker.release()
        breaker.record_success()
        self.degradation.record_success(service)

    def snapshot(self) -> Dict[str, Any]:
        status = self.degradation.get_overall_status()
        return {
            "degraded": status.level.value != "none",
            "degradation_level": status.level.value,
            "status": status.to_dict(),
        }
