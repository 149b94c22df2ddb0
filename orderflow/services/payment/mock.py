"""
Mock Payment Service Implementation

Simulates Stripe payment links without making real API calls.
Used in development mode (ENV_MODE=development) and in tests to:
    - Run the complete order pipeline locally
    - Exercise provider failures deterministically

Behavior:
    - Simulates response times (configurable, zero in tests)
    - Fails a configurable share of requests with retryable errors
    - Generates Stripe-like IDs (plink_xxx)
"""

import asyncio
import json
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from orderflow.services.payment.base import BasePaymentService, PaymentLinkResult

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated provider outage (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        expiration_days: Lifetime given to every minted link
        created_links: Every link minted so far, newest last

    Example:
        >>> service = MockPaymentService(failure_rate=0.0)
        >>> result = await service.create_payment_link(2103, "usd", {"orderNumber": "A1"})
        >>> result.id.startswith("plink_mock_")
        True
    """

    # Simulated failures (mimics Stripe outage responses)
    FAILURE_REASONS = [
        ("api_connection_error", "Could not connect to payment provider."),
        ("rate_limit", "Too many requests hit the API too quickly."),
        ("api_error", "An error occurred with the payment provider's API."),
    ]

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
        expiration_days: int = 1,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.expiration_days = expiration_days
        self.created_links: list[dict] = []

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_link_id(self) -> str:
        """Generate a Stripe-like payment link ID."""
        return f"plink_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate a failure."""
        return random.random() < self.failure_rate

    async def create_payment_link(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentLinkResult:
        """
        Simulate minting a payment link.

        Behavior:
            - Rejects non-positive amounts
            - Simulates network latency
            - Randomly fails based on failure_rate
        """
        logger.debug(f"Mock: Creating payment link for {amount_cents} {currency.upper()}")

        if amount_cents <= 0:
            return PaymentLinkResult(
                success=False,
                error="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()

        if self._should_fail():
            error_code, error_message = random.choice(self.FAILURE_REASONS)
            logger.debug(f"Mock: Payment link failed - {error_code}")
            return PaymentLinkResult(
                success=False,
                error=error_message,
                error_code=error_code,
                retryable=True,
                response_time_ms=latency_ms,
            )

        link_id = self._generate_link_id()
        expires_at = datetime.now(timezone.utc) + timedelta(days=self.expiration_days)
        self.created_links.append({
            "id": link_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": dict(metadata),
        })

        logger.info(f"Mock: Payment link created - {link_id} - {amount_cents} {currency}")

        return PaymentLinkResult(
            success=True,
            id=link_id,
            url=f"https://buy.stripe.com/test_{link_id}",
            expires_at=expires_at,
            response_time_ms=latency_ms,
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Simulate webhook verification.

        In mock mode, returns the parsed payload without cryptographic
        verification.
        """
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Invalid webhook payload")
            return None

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
