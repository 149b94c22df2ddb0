"""
Notification Service Abstract Base Class

Defines interface for sending SMS and Email notifications.
Supports both Mock (development) and Real (production) implementations.

``notify(order)`` is the only entry point the pipeline uses: it tells the
customer (email) and the restaurant (email and/or SMS) about an order and
reports whether at least one message went out.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from orderflow.schemas import StoredOrder

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


def format_order_message(order: StoredOrder) -> str:
    """Plain-text order summary shared by email and SMS."""
    lines = [f"Order #{order.order_number} - {order.restaurant_name}"]
    for item in order.items:
        line = f"{item.quantity} x {item.name} @ ${item.unit_price:.2f}"
        if item.special_instructions:
            line += f" ({item.special_instructions})"
        lines.append(line)

    lines += [
        f"Subtotal: ${order.subtotal:.2f}",
        f"Tax: ${order.tax:.2f}",
        f"Processing fee: ${order.processing_fee:.2f}",
        f"Total: ${order.order_total:.2f}",
        f"Payment: {order.payment_method} ({order.payment_status})",
        f"Customer: {order.customer_name}",
        f"Estimated time: {order.estimated_time} minutes",
    ]
    return "\n".join(lines)


class BaseNotificationService(ABC):
    """
    Abstract base class for notification services.

    Args:
        restaurant_email: Inbox that receives new-order emails
        restaurant_phone: Number that receives new-order SMS
    """

    def __init__(
        self,
        restaurant_email: Optional[str] = None,
        restaurant_phone: Optional[str] = None,
    ):
        self.restaurant_email = restaurant_email
        self.restaurant_phone = restaurant_phone

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def notify(self, order: StoredOrder) -> bool:
        """
        Send order notifications to the customer and the restaurant.

        Returns:
            True if at least one message was delivered
        """
        body = format_order_message(order)
        body_html = "<br>".join(body.splitlines())
        results: list[NotificationResult] = []

        if order.customer_email:
            results.append(await self.send_email(
                to_email=order.customer_email,
                subject=f"Order Confirmed #{order.order_number} - {order.restaurant_name}",
                body_html=body_html,
                body_text=body,
            ))

        if self.restaurant_email:
            results.append(await self.send_email(
                to_email=self.restaurant_email,
                subject=f"New Order #{order.order_number}",
                body_html=body_html,
                body_text=body,
            ))

        if self.restaurant_phone:
            results.append(await self.send_sms(self.restaurant_phone, body))

        if not results:
            logger.warning(f"No notification recipients for order #{order.order_number}")
            return False

        for result in results:
            if not result.success:
                logger.warning(
                    f"Notification via {result.provider} failed for order "
                    f"#{order.order_number}: {result.error_message}"
                )
        return any(r.success for r in results)
