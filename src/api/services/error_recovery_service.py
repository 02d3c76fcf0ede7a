"""
Error Recovery Service

Single choke point for recovering from upstream failures: categorize the
error, pick a strategy, retry and/or fall back, and keep a bounded history.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import httpx
import openai

from ..errors import error_code, error_status
from .circuit_breaker_service import OPEN, CircuitOpenError
from .degradation_service import DegradationService, ServiceType
from .retry_service import RetryPolicy, calculate_delay_ms

logger = logging.getLogger(__name__)

MAX_HISTORY = 10000


class ErrorCategory(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    CIRCUIT_BREAK = "circuit_break"
    DEGRADE = "degrade"
    SKIP = "skip"
    WAIT = "wait"


@dataclass
class RecoveryAttempt:
    service: str
    category: ErrorCategory
    strategy: RecoveryStrategy
    strategy_used: str
    success: bool
    attempts: int
    duration_ms: float
    error_message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class RecoveryResult:
    result: Any
    recovered: bool
    strategy: RecoveryStrategy
    strategy_used: str
    attempts: int
    duration_ms: float
    category: ErrorCategory
    error: Optional[BaseException] = None


def categorize_error(error: BaseException) -> ErrorCategory:
    status = error_status(error)
    code = error_code(error)
    message = str(error).lower()

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (httpx.TransportError, openai.APIConnectionError, ConnectionError)) or "connection" in message:
        return ErrorCategory.NETWORK
    if status == 429 or code == "rate_limit_exceeded" or "rate limit" in message:
        return ErrorCategory.RATE_LIMIT
    if status is not None and 500 <= status < 600:
        return ErrorCategory.SERVER_ERROR
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status == 400:
        return ErrorCategory.VALIDATION
    if status == 404:
        return ErrorCategory.NOT_FOUND
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    return ErrorCategory.UNKNOWN


class ErrorRecoveryService:
    """Recovery policy shared by all retrieval and generation gateways."""

    def __init__(
        self,
        degradation: DegradationService,
        *,
        max_attempts: int = 3,
        retry_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.degradation = degradation
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self._sleep = sleep
        self._history: Deque[RecoveryAttempt] = deque(maxlen=MAX_HISTORY)

    def determine_strategy(self, error: BaseException, service: ServiceType) -> RecoveryStrategy:
        if isinstance(error, CircuitOpenError):
            return RecoveryStrategy.CIRCUIT_BREAK
        category = categorize_error(error)
        if category == ErrorCategory.RATE_LIMIT:
            return RecoveryStrategy.WAIT
        if category in (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT):
            return RecoveryStrategy.RETRY
        if category == ErrorCategory.SERVER_ERROR:
            if self.degradation.check_circuit_state(service) == OPEN:
                return RecoveryStrategy.CIRCUIT_BREAK
            return RecoveryStrategy.DEGRADE
        if category in (ErrorCategory.AUTHENTICATION, ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND):
            return RecoveryStrategy.SKIP
        return RecoveryStrategy.FALLBACK

    async def _retry(self, retry_fn: Callable[[], Awaitable[Any]], attempts: int, initial_delay_ms: float) -> Any:
        policy = RetryPolicy(max_retries=attempts, initial_delay_ms=initial_delay_ms, jitter=0.0)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            await self._sleep(calculate_delay_ms(attempt, policy) / 1000.0)
            try:
                return await retry_fn()
            except Exception as e:
                last_error = e
                logger.debug("[Recovery] retry %s/%s failed: %s", attempt, attempts, e)
        raise last_error if last_error else RuntimeError("retry failed")

    async def attempt_recovery(
        self,
        service: ServiceType,
        error: BaseException,
        retry_fn: Optional[Callable[[], Awaitable[Any]]] = None,
        fallback_fn: Optional[Callable[[], Awaitable[Any]]] = None,
        *,
        already_recorded: bool = False,
    ) -> RecoveryResult:
        """
        Recover from `error` raised by a call to `service`.

        Retries `retry_fn` when the error looks transient, then tries
        `fallback_fn` when supplied. Never raises; an unrecovered outcome is
        reported with `recovered=False`. Pass `already_recorded=True` when the
        failed call went through `HealthRegistry.call`, which has counted the
        error already.
        """
        start = time.monotonic()
        service = ServiceType(service)
        category = categorize_error(error)
        strategy = self.determine_strategy(error, service)
        if not already_recorded:
            self.degradation.handle_service_error(service, error)
        logger.info(
            "[Recovery] %s error (%s), strategy=%s: %s",
            service.value,
            category.value,
            strategy.value,
            error,
        )

        attempts = 0
        last_error: BaseException = error
        if retry_fn is not None and strategy in (RecoveryStrategy.RETRY, RecoveryStrategy.WAIT):
            retry_attempts = self.max_attempts if strategy == RecoveryStrategy.RETRY else 1
            delay_ms = self.retry_delay_ms if strategy == RecoveryStrategy.RETRY else self.retry_delay_ms * 2
            attempts += retry_attempts
            try:
                result = await self._retry(retry_fn, retry_attempts, delay_ms)
            except Exception as e:
                last_error = e
            else:
                self.degradation.record_success(service)
                return self._finish(service, category, strategy, "retry", True, attempts, start, error, result)

        if fallback_fn is not None:
            attempts += 1
            try:
                result = await fallback_fn()
            except Exception as e:
                last_error = e
            else:
                return self._finish(service, category, strategy, "fallback", True, attempts, start, error, result)

        return self._finish(service, category, strategy, "none", False, attempts, start, last_error, None)

    def _finish(
        self,
        service: ServiceType,
        category: ErrorCategory,
        strategy: RecoveryStrategy,
        strategy_used: str,
        success: bool,
        attempts: int,
        start: float,
        error: BaseException,
        result: Any,
    ) -> RecoveryResult:
        duration_ms = (time.monotonic() - start) * 1000
        self._history.append(
            RecoveryAttempt(
                service=service.value,
                category=category,
                strategy=strategy,
                strategy_used=strategy_used,
                success=success,
                attempts=attempts,
                duration_ms=duration_ms,
                error_message=str(error)[:300],
            )
        )
        log = logger.info if success else logger.error
        log(
            "[Recovery] %s %s via %s after %s attempt(s) (%.0fms)",
            service.value,
            "recovered" if success else "not recovered",
            strategy_used,
            attempts,
            duration_ms,
        )
        return RecoveryResult(
            result=result,
            recovered=success,
            strategy=strategy,
            strategy_used=strategy_used,
            attempts=attempts,
            duration_ms=duration_ms,
            category=category,
            error=None if success else error,
        )

    def get_history(self, limit: Optional[int] = None) -> List[RecoveryAttempt]:
        items = list(self._history)
        return items[-limit:] if limit else items

    def get_stats(self) -> Dict[str, Any]:
        items = list(self._history)
        successful = sum(1 for item in items if item.success)
        by_category: Dict[str, int] = {}
        by_strategy: Dict[str, int] = {}
        for item in items:
            by_category[item.category.value] = by_category.get(item.category.value, 0) + 1
            by_strategy[item.strategy_used] = by_strategy.get(item.strategy_used, 0) + 1
        return {
            "total_attempts": len(items),
            "successful_recoveries": successful,
            "failed_recoveries": len(items) - successful,
            "success_rate": (successful / len(items)) if items else 0.0,
            "average_duration_ms": (sum(item.duration_ms for item in items) / len(items)) if items else 0.0,
            "recoveries_by_category": by_category,
            "recoveries_by_strategy": by_strategy,
        }

    def reset_stats(self) -> None:
        self._history.clear()
