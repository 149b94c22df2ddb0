"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

A payment link is minted as a product, a one-off price and a payment link
whose completion redirects to the order confirmation page. The SDK is
synchronous, so calls run in a worker thread.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from orderflow.core.config import get_settings
from orderflow.services.payment.base import BasePaymentService, PaymentLinkResult

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment-link service.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
        Uses STRIPE_WEBHOOK_SECRET for webhook verification.
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        # Configure Stripe SDK
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        self._webhook_secret = settings.stripe_webhook_secret
        self._frontend_url = settings.frontend_url.rstrip("/")
        self._expiration_days = settings.payment_link_expiration_days

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    def _mint_link(self, amount_cents: int, currency: str, metadata: dict[str, str]):
        order_number = metadata.get("orderNumber", "")

        product = stripe.Product.create(
            name=f"Order #{order_number}",
            metadata=metadata,
        )
        price = stripe.Price.create(
            product=product.id,
            unit_amount=amount_cents,
            currency=currency,
        )
        return stripe.PaymentLink.create(
            line_items=[{"price": price.id, "quantity": 1}],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            after_completion={
                "type": "redirect",
                "redirect": {
                    "url": f"{self._frontend_url}/order-confirmation?orderId={order_number}",
                },
            },
        )

    async def create_payment_link(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentLinkResult:
        """
        Create a Stripe payment link.

        Outages (connection, rate limit, 5xx) come back as retryable
        failures; rejected requests are not retryable.
        """
        start_time = datetime.now()

        logger.info(f"Stripe: Creating payment link for {amount_cents} {currency}")

        try:
            link = await asyncio.to_thread(self._mint_link, amount_cents, currency, metadata)

        except InvalidRequestError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Invalid request - {e}")

            return PaymentLinkResult(
                success=False,
                error=str(e),
                error_code="invalid_request",
                response_time_ms=elapsed_ms,
            )

        except AuthenticationError as e:
            # API key issues
            logger.critical(f"Stripe: Authentication failed - {e}")

            return PaymentLinkResult(
                success=False,
                error="Payment service configuration error",
                error_code="authentication_error",
            )

        except (APIConnectionError, RateLimitError, APIError) as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Provider unavailable - {e}")

            return PaymentLinkResult(
                success=False,
                error="Payment service temporarily unavailable",
                error_code="connection_error",
                retryable=True,
                response_time_ms=elapsed_ms,
            )

        except StripeError as e:
            # Generic Stripe error
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Error - {e}")

            return PaymentLinkResult(
                success=False,
                error="Payment link creation error",
                error_code="stripe_error",
                retryable=True,
                response_time_ms=elapsed_ms,
            )

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(f"Stripe: Payment link created - {link.id}")

        return PaymentLinkResult(
            success=True,
            id=link.id,
            url=link.url,
            expires_at=datetime.now(timezone.utc) + timedelta(days=self._expiration_days),
            response_time_ms=elapsed_ms,
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a Stripe webhook event.

        Returns:
            Parsed event object if valid, None if verification fails
        """
        if not self._webhook_secret:
            logger.error("Stripe: Webhook secret not configured, rejecting event")
            return None

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )

        except SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None

        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload invalid - {e}")
            return None

        logger.debug(f"Stripe: Webhook verified - {event['type']}")
        return event.to_dict()

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            logger.debug("Stripe: Health check passed")
            return True

        except StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
