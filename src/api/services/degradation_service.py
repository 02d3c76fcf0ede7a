"""
Degradation Service

Tracks per-service health for the external dependencies of the answer
pipeline and aggregates it into one worst-case level.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import error_code, error_status
from .circuit_breaker_service import OPEN, CircuitBreakerRegistry

logger = logging.getLogger(__name__)


class DegradationLevel(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    SEVERE = "severe"
    CRITICAL = "critical"


class ServiceType(str, Enum):
    EMBEDDING = "embedding"
    SEARCH = "search"
    PINECONE = "pinecone"
    OPENAI = "openai"
    TAVILY = "tavily"


_LEVEL_ORDER = {
    DegradationLevel.NONE: 0,
    DegradationLevel.PARTIAL: 1,
    DegradationLevel.SEVERE: 2,
    DegradationLevel.CRITICAL: 3,
}

CIRCUIT_NAMES: Dict[ServiceType, str] = {
    ServiceType.EMBEDDING: "openai-embeddings",
    ServiceType.SEARCH: "tavily-search",
    ServiceType.PINECONE: "pinecone-query",
    ServiceType.OPENAI: "openai-chat",
    ServiceType.TAVILY: "tavily-search",
}


def worse(a: DegradationLevel, b: DegradationLevel) -> DegradationLevel:
    return a if _LEVEL_ORDER[a] >= _LEVEL_ORDER[b] else b


@dataclass
class ServiceHealth:
    level: DegradationLevel = DegradationLevel.NONE
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_error: str = ""

    @property
    def state(self) -> str:
        if self.level == DegradationLevel.NONE:
            return "healthy"
        if self.level == DegradationLevel.CRITICAL:
            return "down"
        return "degraded"


@dataclass
class DegradationStatus:
    level: DegradationLevel
    affected_services: List[ServiceType] = field(default_factory=list)
    message: str = "All services operational"
    can_provide_partial_results: bool = True
    fallback_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "affected_services": [service.value for service in self.affected_services],
            "message": self.message,
            "can_provide_partial_results": self.can_provide_partial_results,
            "fallback_available": self.fallback_available,
        }


class DegradationService:
    """Per-service health table. Starts HEALTHY for every service."""

    def __init__(
        self,
        circuits: Optional[CircuitBreakerRegistry] = None,
        *,
        down_after_failures: int = 5,
        recovery_window_seconds: float = 300.0,
    ):
        self.circuits = circuits or CircuitBreakerRegistry()
        self.down_after_failures = max(1, int(down_after_failures))
        self.recovery_window_seconds = recovery_window_seconds
        self._health: Dict[ServiceType, ServiceHealth] = {service: ServiceHealth() for service in ServiceType}

    def health(self, service: ServiceType) -> ServiceHealth:
        return self._health[ServiceType(service)]

    def get_service_level(self, service: ServiceType) -> DegradationLevel:
        entry = self.health(service)
        if (
            entry.level != DegradationLevel.NONE
            and entry.last_failure_at is not None
            and time.monotonic() - entry.last_failure_at > self.recovery_window_seconds
        ):
            # Stale failures age out when nothing has failed recently.
            entry.level = DegradationLevel.NONE
            entry.consecutive_failures = 0
        return entry.level

    def is_service_degraded(self, service: ServiceType) -> bool:
        return self.get_service_level(service) != DegradationLevel.NONE

    def update_service_status(self, service: ServiceType, level: DegradationLevel) -> None:
        entry = self.health(service)
        if entry.level != level:
            logger.info("[Degradation] %s: %s -> %s", ServiceType(service).value, entry.level.value, level.value)
        entry.level = level

    def check_circuit_state(self, service: ServiceType) -> Optional[str]:
        return self.circuits.state(CIRCUIT_NAMES[ServiceType(service)])

    def record_success(self, service: ServiceType) -> None:
        entry = self.health(service)
        entry.consecutive_failures = 0
        entry.last_success_at = time.monotonic()
        if entry.level != DegradationLevel.NONE:
            self.update_service_status(service, DegradationLevel.NONE)

    def handle_service_error(self, service: ServiceType, error: BaseException) -> DegradationLevel:
        """Record a failed call and return the service's new level."""
        entry = self.health(service)
        entry.consecutive_failures += 1
        entry.last_failure_at = time.monotonic()
        entry.last_error = str(error)[:300]

        status = error_status(error)
        code = error_code(error)
        if self.check_circuit_state(service) == OPEN:
            level = DegradationLevel.SEVERE
        elif status == 429 or code == "rate_limit_exceeded":
            level = DegradationLevel.PARTIAL
        elif (status is not None and status >= 500) or isinstance(error, (TimeoutError, ConnectionError)):
            level = DegradationLevel.SEVERE
        else:
            level = DegradationLevel.PARTIAL

        if entry.consecutive_failures >= self.down_after_failures:
            level = DegradationLevel.CRITICAL

        self.update_service_status(service, level)
        return level

    def reset_service_status(self, service: ServiceType) -> None:
        self._health[ServiceType(service)] = ServiceHealth()
        logger.info("[Degradation] %s status reset", ServiceType(service).value)

    def reset_all(self) -> None:
        for service in ServiceType:
            self._health[service] = ServiceHealth()
        logger.info("[Degradation] all statuses reset")

    def get_overall_status(self) -> DegradationStatus:
        affected: List[ServiceType] = []
        max_level = DegradationLevel.NONE
        for service in ServiceType:
            level = self.get_service_level(service)
            if self.check_circuit_state(service) == OPEN:
                level = worse(level, DegradationLevel.SEVERE)
                self.health(service).level = level
            if level != DegradationLevel.NONE:
                affected.append(service)
                max_level = worse(max_level, level)

        return DegradationStatus(
            level=max_level,
            affected_services=affected,
            message=self._message(max_level, affected),
            can_provide_partial_results=self._can_provide_partial_results(affected),
            fallback_available=self._has_fallback(affected),
        )

    @staticmethod
    def _can_provide_partial_results(affected: List[ServiceType]) -> bool:
        if not affected:
            return True
        if ServiceType.EMBEDDING in affected and ServiceType.SEARCH not in affected:
            return True
        return ServiceType.PINECONE in affected or ServiceType.OPENAI in affected

    @staticmethod
    def _has_fallback(affected: List[ServiceType]) -> bool:
        return any(service in affected for service in (ServiceType.EMBEDDING, ServiceType.SEARCH, ServiceType.OPENAI))

    @staticmethod
    def _message(level: DegradationLevel, affected: List[ServiceType]) -> str:
        if level == DegradationLevel.NONE:
            return "All services operational"
        names = ", ".join(service.value.upper() for service in affected)
        if level == DegradationLevel.PARTIAL:
            return f"Some services are experiencing issues ({names}). Partial functionality available."
        if level == DegradationLevel.SEVERE:
            return f"Multiple services are unavailable ({names}). Limited functionality available."
        return f"Critical services are unavailable ({names}). Minimal functionality available."

    def get_statistics(self) -> Dict[str, Any]:
        services = {}
        for service in ServiceType:
            entry = self.health(service)
            services[service.value] = {
                "level": self.get_service_level(service).value,
                "state": entry.state,
                "consecutive_failures": entry.consecutive_failures,
                "last_error": entry.last_error,
            }
        degraded = sum(1 for item in services.values() if item["level"] != DegradationLevel.NONE.value)
        return {
            "total_services": len(services),
            "degraded_services": degraded,
            "services": services,
            "overall_status": self.get_overall_status().to_dict(),
            "circuits": self.circuits.stats(),
        }
