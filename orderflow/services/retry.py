"""
Retry Executor

Bounded retry with exponential backoff, plus primary/fallback degradation.

``compute_backoff`` is the one backoff primitive in the code base: durable
store writes use it through ``with_retry`` and the order queue uses it to
schedule ``next_attempt_at``.

Usage:
    result = await with_retry(
        lambda: repository.save(order),
        RetryConfig(max_retries=2, initial_delay=0.5, backoff_factor=1.0),
        name="save_order",
        category="ORDER_STORAGE",
        order_id=order.order_number,
        reporter=reporter,
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from orderflow.core.exceptions import OrderValidationError
from orderflow.services.observability import AlertType, EventReporter

T = TypeVar("T")

logger = logging.getLogger(__name__)

JITTER_LOW = 0.8
JITTER_HIGH = 1.2


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Seconds before the first retry
        max_delay: Upper bound for a single delay
        backoff_factor: Growth per attempt (1.0 gives a fixed backoff)
        jitter: Scale each delay by a uniform factor in [0.8, 1.2]
        non_retryable: Exception types re-raised without retrying
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True
    non_retryable: tuple[type[BaseException], ...] = field(
        default=(OrderValidationError,)
    )


def compute_backoff(
    attempt: int,
    config: RetryConfig,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (0-based).

    ``min(initial_delay * backoff_factor ** attempt, max_delay)``, scaled by a
    uniform factor in [0.8, 1.2] when jitter is enabled.
    """
    attempt = max(0, attempt)
    delay = min(config.initial_delay * (config.backoff_factor ** attempt), config.max_delay)

    if config.jitter:
        uniform = (rng or random).uniform
        delay *= uniform(JITTER_LOW, JITTER_HIGH)

    return delay


def _describe(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    name: str,
    category: str,
    reporter: EventReporter,
    order_id: Optional[Any] = None,
    correlation_id: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """
    Run ``operation`` until it succeeds or the retry budget is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        config: Retry policy (defaults to ``RetryConfig()``)
        name: Operation name for reporting
        category: Observability category
        reporter: Observability sink

    Returns:
        Whatever ``operation`` returns on its first successful attempt

    Raises:
        The last error once ``max_retries`` retries have failed, or a
        non-retryable error immediately.
    """
    config = config or RetryConfig()
    total_attempts = config.max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(total_attempts):
        if attempt > 0:
            delay = compute_backoff(attempt - 1, config, rng)
            reporter.info(
                "RETRY",
                f"Retry attempt {attempt}/{config.max_retries} for {name} after {delay:.3f}s",
                order_id=order_id,
                correlation_id=correlation_id,
                data={"category": category, "attempt": attempt, "delay_seconds": delay},
            )
            await sleep(delay)

        try:
            result = await operation()
        except config.non_retryable:
            raise
        except Exception as e:
            last_error = e
            reporter.warning(
                "RETRY_ATTEMPT_FAILED",
                f"{name} failed on attempt {attempt + 1}/{total_attempts}",
                order_id=order_id,
                correlation_id=correlation_id,
                data={
                    "category": category,
                    "attempt": attempt + 1,
                    "error": _describe(e),
                },
            )
            continue

        if attempt > 0:
            reporter.info(
                "RETRY_SUCCESS",
                f"{name} succeeded after {attempt} retries",
                order_id=order_id,
                correlation_id=correlation_id,
                data={"category": category, "attempts": attempt + 1},
            )
        return result

    reporter.raise_alert(
        AlertType.API_ERROR,
        f"{name} failed after {total_attempts} attempts",
        level=logging.ERROR,
        order_id=order_id,
        correlation_id=correlation_id,
        data={"category": category, "last_error": _describe(last_error)},
    )
    raise last_error


async def with_graceful_degradation(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[], Awaitable[T]],
    *,
    name: str,
    category: str,
    reporter: EventReporter,
    order_id: Optional[Any] = None,
    correlation_id: Optional[str] = None,
) -> T:
    """
    Run ``primary``; on failure run ``fallback``.

    Raises:
        The fallback's error (not the primary's) when both fail.
    """
    try:
        return await primary()
    except Exception as primary_error:
        reporter.warning(
            "DEGRADATION",
            f"Primary {name} failed, falling back to alternative",
            order_id=order_id,
            correlation_id=correlation_id,
            data={"category": category, "error": _describe(primary_error)},
        )

        try:
            result = await fallback()
        except Exception as fallback_error:
            reporter.error(
                "DEGRADATION_FAILED",
                f"Both primary and fallback {name} failed",
                order_id=order_id,
                correlation_id=correlation_id,
                data={
                    "category": category,
                    "primary_error": _describe(primary_error),
                    "fallback_error": _describe(fallback_error),
                },
            )
            raise fallback_error from primary_error

        reporter.info(
            "DEGRADATION_SUCCESS",
            f"Fallback {name} succeeded",
            order_id=order_id,
            correlation_id=correlation_id,
            data={"category": category},
        )
        return result
