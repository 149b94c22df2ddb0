"""
Payment Service Factory

Provides a single entry point for obtaining a payment-link provider.
The rest of the application stays agnostic about which implementation is
being used.

Usage:
    from orderflow.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()

    result = await payment_service.create_payment_link(2103, "usd", {"orderNumber": "A1"})

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.payment.base import BasePaymentService, PaymentLinkResult
from orderflow.services.payment.mock import MockPaymentService
from orderflow.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance.

    The instance is cached so every caller shares one provider.

    Raises:
        ValueError: If not in development mode and the Stripe key is missing
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=0.10,  # 10% simulated outages
            min_latency=0.2,
            max_latency=0.8,
            expiration_days=settings.payment_link_expiration_days,
        )
    else:
        logger.info(
            f"Payment Service: Using StripePaymentService "
            f"({settings.env_mode.value} mode)"
        )
        return StripePaymentService()


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    The next call to get_payment_service() will create a new instance.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "PaymentLinkResult",
    "MockPaymentService",
    "StripePaymentService",
]
