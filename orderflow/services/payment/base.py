"""
Payment Service Abstract Base Class

Defines the interface contract for payment-link providers.
Both MockPaymentService and StripePaymentService implement these methods,
so the reconciler behaves identically whichever one is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class PaymentLinkResult:
    """
    Standardized result from payment-link creation.

    Attributes:
        success: Whether a link was minted
        id: Provider link identifier (Stripe format: plink_xxx)
        url: Customer-facing checkout URL
        expires_at: When the application stops treating the link as active
        error: Error description if creation failed
        error_code: Machine-readable error code
        retryable: Whether the failure may succeed on a later attempt
        response_time_ms: Time taken by the provider
    """
    success: bool
    id: Optional[str] = None
    url: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    response_time_ms: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "id": self.id,
            "url": self.url,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "response_time_ms": self.response_time_ms,
        }


class BasePaymentService(ABC):
    """
    Abstract base class for payment-link providers.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.create_payment_link(2103, "usd", {"orderNumber": "A1"})
        >>> if result.success:
        ...     print(result.url)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def create_payment_link(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentLinkResult:
        """
        Mint a product/price/payment-link triple for one order.

        Args:
            amount_cents: Amount in the currency's minor unit (e.g., 2103)
            currency: Three-letter currency code
            metadata: Key-value data attached to the link (must carry orderNumber)

        Returns:
            PaymentLinkResult: Standardized result object
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a webhook from the payment provider.

        Args:
            payload: Raw request body bytes
            signature: Signature header from the request

        Returns:
            dict: Parsed webhook event if valid, None if invalid
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass
