"""
Retry Service

Exponential backoff with jitter for transient upstream failures.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import openai

from ..errors import error_code, error_status

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
RETRYABLE_CODES = ("rate_limit_exceeded", "server_error", "timeout")
_TRANSIENT_EXCEPTIONS: Tuple[type, ...] = (
    httpx.TransportError,
    openai.APIConnectionError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter: float = 0.1


@dataclass
class RetryStats:
    total_attempts: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    total_retries: int = 0
    retries_by_error: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        calls = self.successful_retries + self.failed_retries
        return {
            "total_attempts": self.total_attempts,
            "successful_retries": self.successful_retries,
            "failed_retries": self.failed_retries,
            "total_retries": self.total_retries,
            "average_retries": (self.total_retries / calls) if calls else 0.0,
            "retries_by_error": dict(self.retries_by_error),
        }


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return True
    if error_status(error) in RETRYABLE_STATUSES:
        return True
    code = error_code(error)
    if code in RETRYABLE_CODES:
        return True
    message = str(error).lower()
    return any(token in message for token in ("rate limit", "timeout", "timed out"))


def calculate_delay_ms(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay before retry number `attempt` (1-based), capped and jittered."""
    delay = policy.initial_delay_ms * (policy.multiplier ** max(0, attempt - 1))
    delay = min(delay, policy.max_delay_ms)
    if policy.jitter > 0:
        delay += delay * policy.jitter * rng()
    return delay


class RetryService:
    """Runs an async callable, retrying transient failures with backoff."""

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.stats = RetryStats()

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        label: str = "operation",
        max_retries: Optional[int] = None,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
    ) -> Any:
        retries = self.policy.max_retries if max_retries is None else max(0, int(max_retries))
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn()
            except Exception as e:
                if attempt > retries or not should_retry(e):
                    self.stats.total_attempts += attempt
                    if attempt > 1:
                        self.stats.failed_retries += 1
                        self.stats.total_retries += attempt - 1
                    key = str(error_status(e) or error_code(e) or type(e).__name__)
                    self.stats.retries_by_error[key] = self.stats.retries_by_error.get(key, 0) + 1
                    logger.warning(
                        "[Retry] %s failed after %s attempt(s): %s",
                        label,
                        attempt,
                        e,
                    )
                    raise
                delay_ms = calculate_delay_ms(attempt, self.policy)
                logger.warning(
                    "[Retry] %s attempt %s/%s failed (%s); retrying in %.0fms",
                    label,
                    attempt,
                    retries + 1,
                    e,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)
                continue

            self.stats.total_attempts += attempt
            if attempt > 1:
                self.stats.successful_retries += 1
                self.stats.total_retries += attempt - 1
                logger.info(
                    "[Retry] %s succeeded after %s attempts (%.0fms)",
                    label,
                    attempt,
                    (time.monotonic() - start) * 1000,
                )
            return result

    def reset_stats(self) -> None:
        self.stats = RetryStats()
