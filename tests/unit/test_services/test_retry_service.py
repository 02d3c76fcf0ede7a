import asyncio

import pytest

from src.api.services.retry_service import RetryPolicy, RetryService, calculate_delay_ms, is_retryable_error


class _StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"status {status}")
        self.status = status


def _service(**policy):
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    return RetryService(RetryPolicy(jitter=0.0, **policy), sleep=_sleep), delays


def test_delay_grows_exponentially_and_caps():
    policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=3000, multiplier=2.0, jitter=0.0)

    assert [calculate_delay_ms(n, policy) for n in (1, 2, 3, 4)] == [1000, 2000, 3000, 3000]


def test_jitter_adds_at_most_its_fraction():
    policy = RetryPolicy(initial_delay_ms=1000, jitter=0.1)

    assert calculate_delay_ms(1, policy, rng=lambda: 1.0) == pytest.approx(1100)
    assert calculate_delay_ms(1, policy, rng=lambda: 0.0) == 1000


def test_retryable_error_classification():
    assert is_retryable_error(_StatusError(429))
    assert is_retryable_error(_StatusError(503))
    assert is_retryable_error(ConnectionError("reset"))
    assert is_retryable_error(RuntimeError("request timed out"))
    assert not is_retryable_error(_StatusError(400))
    assert not is_retryable_error(_StatusError(401))


def test_execute_retries_transient_failures_then_succeeds():
    service, delays = _service(max_retries=3, initial_delay_ms=100)
    attempts = []

    async def _flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise _StatusError(503)
        return "done"

    assert asyncio.run(service.execute(_flaky, label="flaky")) == "done"
    assert len(attempts) == 3
    assert delays == [0.1, 0.2]
    assert service.stats.successful_retries == 1


def test_execute_does_not_retry_client_errors():
    service, delays = _service(max_retries=3)
    attempts = []

    async def _bad():
        attempts.append(1)
        raise _StatusError(400)

    with pytest.raises(_StatusError):
        asyncio.run(service.execute(_bad))
    assert len(attempts) == 1
    assert delays == []


def test_execute_gives_up_after_max_retries():
    service, delays = _service(max_retries=2, initial_delay_ms=10)
    attempts = []

    async def _down():
        attempts.append(1)
        raise _StatusError(500)

    with pytest.raises(_StatusError):
        asyncio.run(service.execute(_down))
    assert len(attempts) == 3
    assert service.stats.to_dict()["failed_retries"] == 1
    assert service.stats.retries_by_error == {"500": 1}
