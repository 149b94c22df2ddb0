"""
Retry executor tests: backoff schedule, retry budget and degradation.
"""
import random

import pytest

from orderflow.core.exceptions import OrderValidationError
from orderflow.services.observability import AlertType, EventReporter
from orderflow.services.retry import (
    RetryConfig,
    compute_backoff,
    with_graceful_degradation,
    with_retry,
)


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def failing(times: int, result: str = "ok", error: Exception = None):
    state = {"calls": 0}

    async def operation() -> str:
        state["calls"] += 1
        if state["calls"] <= times:
            raise error or ConnectionError(f"failure {state['calls']}")
        return result

    return operation, state


class TestComputeBackoff:

    @pytest.mark.unit
    def test_exponential_without_jitter(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, backoff_factor=2.0, jitter=False)
        assert [compute_backoff(n, config) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    @pytest.mark.unit
    def test_monotonic_and_bounded(self) -> None:
        config = RetryConfig(initial_delay=0.5, max_delay=30.0, backoff_factor=3.0, jitter=False)
        delays = [compute_backoff(n, config) for n in range(20)]
        assert delays == sorted(delays)
        assert max(delays) == 30.0

    @pytest.mark.unit
    def test_jitter_stays_within_twenty_percent(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, jitter=True)
        rng = random.Random(42)
        for attempt in range(8):
            base = min(2.0 ** attempt, 10.0)
            for _ in range(50):
                delay = compute_backoff(attempt, config, rng)
                assert base * 0.8 <= delay <= base * 1.2

    @pytest.mark.unit
    def test_negative_attempt_treated_as_first(self) -> None:
        config = RetryConfig(initial_delay=2.0, jitter=False)
        assert compute_backoff(-3, config) == 2.0


class TestWithRetry:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        reporter = EventReporter()
        sleep = Recorder()
        operation, state = failing(2)
        config = RetryConfig(max_retries=3, initial_delay=1.0, jitter=False)

        result = await with_retry(
            operation, config, name="op", category="TEST", reporter=reporter, sleep=sleep
        )

        assert result == "ok"
        assert state["calls"] == 3
        assert sleep.delays == [1.0, 2.0]
        assert len(reporter.events("RETRY_ATTEMPT_FAILED")) == 2
        assert len(reporter.events("RETRY_SUCCESS")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_and_alerts(self) -> None:
        reporter = EventReporter()
        operation, state = failing(10)
        config = RetryConfig(max_retries=2, initial_delay=0, jitter=False)

        with pytest.raises(ConnectionError, match="failure 3"):
            await with_retry(
                operation, config, name="op", category="TEST", reporter=reporter, sleep=Recorder()
            )

        assert state["calls"] == 3
        assert len(reporter.active_alerts(AlertType.API_ERROR)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self) -> None:
        operation, state = failing(1)
        with pytest.raises(ConnectionError):
            await with_retry(
                operation,
                RetryConfig(max_retries=0),
                name="op",
                category="TEST",
                reporter=EventReporter(),
                sleep=Recorder(),
            )
        assert state["calls"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self) -> None:
        sleep = Recorder()
        operation, state = failing(5, error=OrderValidationError("bad order"))

        with pytest.raises(OrderValidationError):
            await with_retry(
                operation, RetryConfig(), name="op", category="TEST",
                reporter=EventReporter(), sleep=sleep,
            )

        assert state["calls"] == 1
        assert sleep.delays == []


class TestGracefulDegradation:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_primary_result_wins(self) -> None:
        async def primary() -> str:
            return "primary"

        async def fallback() -> str:
            raise AssertionError("fallback should not run")

        result = await with_graceful_degradation(
            primary, fallback, name="op", category="TEST", reporter=EventReporter()
        )
        assert result == "primary"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_used_on_primary_failure(self) -> None:
        reporter = EventReporter()

        async def primary() -> str:
            raise ConnectionError("down")

        async def fallback() -> str:
            return "fallback"

        result = await with_graceful_degradation(
            primary, fallback, name="op", category="TEST", reporter=reporter
        )

        assert result == "fallback"
        assert len(reporter.events("DEGRADATION")) == 1
        assert len(reporter.events("DEGRADATION_SUCCESS")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_error_propagates(self) -> None:
        async def primary() -> str:
            raise ConnectionError("primary down")

        async def fallback() -> str:
            raise RuntimeError("fallback down")

        with pytest.raises(RuntimeError, match="fallback down") as exc_info:
            await with_graceful_degradation(
                primary, fallback, name="op", category="TEST", reporter=EventReporter()
            )
        assert isinstance(exc_info.value.__cause__, ConnectionError)
