"""
Pipeline Error Taxonomy

Only queue-processing failures drive the retry/dead-letter state machine.
Validation errors are surfaced immediately and never retried; a missing order
that cannot be reconstructed is reported through ``OrderLookup`` rather than
raised.
"""

from typing import Optional


class OrderflowError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = True

    def __init__(self, message: str, *, order_number: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_number = order_number


class OrderValidationError(OrderflowError):
    """Malformed order payload. Never retried."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        order_number: Optional[str] = None,
        errors: Optional[list[dict]] = None,
    ):
        super().__init__(message, order_number=order_number)
        self.errors = errors or []


class TransientInfraError(OrderflowError):
    """Database or network hiccup. Retried, eventually dead-lettered."""


class PermanentProcessingError(OrderflowError):
    """
    A downstream collaborator rejected the order.

    Still retried up to ``max_attempts``: whether a rejection is permanent
    cannot always be known in advance.
    """


class PaymentAmountError(PermanentProcessingError):
    """Order total is not a chargeable amount."""
