import asyncio

import httpx

from src.api.services.circuit_breaker_service import CircuitBreakerRegistry, CircuitOpenError
from src.api.services.degradation_service import DegradationService, ServiceType
from src.api.services.error_recovery_service import (
    ErrorCategory,
    ErrorRecoveryService,
    RecoveryStrategy,
    categorize_error,
)


class _StatusError(Exception):
    def __init__(self, status, message="upstream"):
        super().__init__(message)
        self.status = status


async def _no_sleep(_seconds):
    return None


def _service(**kwargs):
    circuits = CircuitBreakerRegistry()
    degradation = DegradationService(circuits)
    return ErrorRecoveryService(degradation, retry_delay_ms=1, sleep=_no_sleep, **kwargs), circuits


def test_categorize_error():
    assert categorize_error(asyncio.TimeoutError()) == ErrorCategory.TIMEOUT
    assert categorize_error(httpx.ConnectError("refused")) == ErrorCategory.NETWORK
    assert categorize_error(_StatusError(429)) == ErrorCategory.RATE_LIMIT
    assert categorize_error(_StatusError(502)) == ErrorCategory.SERVER_ERROR
    assert categorize_error(_StatusError(401)) == ErrorCategory.AUTHENTICATION
    assert categorize_error(_StatusError(400)) == ErrorCategory.VALIDATION
    assert categorize_error(_StatusError(404)) == ErrorCategory.NOT_FOUND
    assert categorize_error(RuntimeError("strange")) == ErrorCategory.UNKNOWN


def test_strategy_selection():
    service, circuits = _service()

    assert service.determine_strategy(CircuitOpenError("x"), ServiceType.OPENAI) == RecoveryStrategy.CIRCUIT_BREAK
    assert service.determine_strategy(_StatusError(429), ServiceType.OPENAI) == RecoveryStrategy.WAIT
    assert service.determine_strategy(ConnectionError("reset"), ServiceType.OPENAI) == RecoveryStrategy.RETRY
    assert service.determine_strategy(_StatusError(500), ServiceType.OPENAI) == RecoveryStrategy.DEGRADE
    assert service.determine_strategy(_StatusError(401), ServiceType.OPENAI) == RecoveryStrategy.SKIP
    assert service.determine_strategy(RuntimeError("strange"), ServiceType.OPENAI) == RecoveryStrategy.FALLBACK

    circuits.open("openai-chat")
    assert service.determine_strategy(_StatusError(500), ServiceType.OPENAI) == RecoveryStrategy.CIRCUIT_BREAK


def test_transient_error_recovers_by_retry():
    service, _ = _service(max_attempts=3)
    calls = []

    async def _retry():
        calls.append(1)
        if len(calls) < 2:
            raise ConnectionError("still down")
        return ["hit"]

    outcome = asyncio.run(service.attempt_recovery(ServiceType.PINECONE, ConnectionError("reset"), _retry))

    assert outcome.recovered is True
    assert outcome.result == ["hit"]
    assert outcome.strategy_used == "retry"
    assert len(calls) == 2


def test_fallback_used_when_retry_is_not_appropriate():
    service, _ = _service()

    async def _retry():
        raise AssertionError("must not retry")

    async def _fallback():
        return ["keyword"]

    outcome = asyncio.run(
        service.attempt_recovery(ServiceType.PINECONE, _StatusError(500), _retry, _fallback)
    )

    assert outcome.recovered is True
    assert outcome.result == ["keyword"]
    assert outcome.strategy == RecoveryStrategy.DEGRADE
    assert outcome.strategy_used == "fallback"


def test_unrecovered_outcome_never_raises_and_is_recorded():
    service, _ = _service()

    outcome = asyncio.run(service.attempt_recovery(ServiceType.TAVILY, _StatusError(401)))

    assert outcome.recovered is False
    assert outcome.result is None
    stats = service.get_stats()
    assert stats["total_attempts"] == 1
    assert stats["failed_recoveries"] == 1
    assert stats["recoveries_by_category"] == {"authentication": 1}
    assert service.degradation.is_service_degraded(ServiceType.TAVILY)


def test_reset_stats_clears_history():
    service, _ = _service()
    asyncio.run(service.attempt_recovery(ServiceType.TAVILY, RuntimeError("x")))

    service.reset_stats()

    assert service.get_history() == []
    assert service.get_stats()["success_rate"] == 0.0


def test_already_recorded_error_is_not_counted_again():
    service, _ = _service()

    outcome = asyncio.run(
        service.attempt_recovery(ServiceType.EMBEDDING, RuntimeError("x"), already_recorded=True)
    )

    assert outcome.recovered is False
    assert service.degradation.health(ServiceType.EMBEDDING).consecutive_failures == 0
    assert service.get_stats()["total_attempts"] == 1
