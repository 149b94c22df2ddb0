"""
                        Services Module

Contains all business logic services with the hybrid architecture pattern.
External providers have Mock (development) and Real (production)
implementations.

Services:
    - pricing: Order totals, tax and processing fees
    - retry: Backoff, retry and graceful degradation helpers
    - order_store: Cache-over-database order storage with recovery
    - queue: Durable order queue and its processor
    - payment: Stripe payment links and payment reconciliation
    - notifications: SMS and email order notifications
    - observability: Structured events and alerts
"""

from orderflow.services.pricing import PriceBreakdown, PriceCalculator
from orderflow.services.retry import RetryConfig, with_graceful_degradation, with_retry

__all__ = [
    "PriceBreakdown",
    "PriceCalculator",
    "RetryConfig",
    "with_retry",
    "with_graceful_degradation",
]
