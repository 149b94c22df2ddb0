"""
Payment Reconciler

Turns a priced order into a payment link and tracks the payment afterwards.

- ``generate_payment_link`` is idempotent: an order with an active link gets
  that link back instead of a second one.
- Amounts are checked (positive, finite, below the ceiling) before they are
  converted to cents.
- ``handle_payment_event`` applies inbound status changes. A completed
  payment never moves backwards and triggers the order notification once.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import InvalidOperation
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from orderflow.core.config import Settings
from orderflow.core.exceptions import (
    PaymentAmountError,
    PermanentProcessingError,
    TransientInfraError,
)
from orderflow.schemas import PaymentEvent, StoredOrder, utcnow
from orderflow.services.notifications.dispatch import OrderNotifier
from orderflow.services.observability import AlertType, EventReporter
from orderflow.services.order_store import OrderStore
from orderflow.services.payment.base import BasePaymentService
from orderflow.services.pricing import round_cents, to_decimal

logger = logging.getLogger(__name__)

CATEGORY = "PAYMENT"

# Stripe event type -> payment status
STRIPE_EVENT_STATUS = {
    "checkout.session.completed": "completed",
    "checkout.session.async_payment_succeeded": "completed",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "failed",
    "payment_intent.payment_failed": "failed",
}


def parse_stripe_event(event: dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Map a verified Stripe event onto a PaymentEvent.

    Returns None for event types that do not affect payment status.
    """
    status = STRIPE_EVENT_STATUS.get(event.get("type", ""))
    if status is None:
        return None

    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    # A completed session for a delayed payment method is not paid yet
    if event["type"] == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
        status = "pending"

    return PaymentEvent(
        payment_link_id=obj.get("payment_link"),
        transaction_id=obj.get("id"),
        order_number=metadata.get("orderNumber"),
        status=status,
    )


class PaymentReconciler:
    """
    Args:
        store: Order store holding the orders being paid
        provider: Payment-link provider
        reporter: Observability sink
        notifier: Sends the paid-order notification
        currency: Currency code for new links
        max_amount: Largest order total accepted for a link
        expiration_days: Link lifetime when the provider does not report one
        call_timeout: Seconds allowed for a provider call
    """

    def __init__(
        self,
        store: OrderStore,
        provider: BasePaymentService,
        reporter: EventReporter,
        notifier: Optional[OrderNotifier] = None,
        currency: str = "usd",
        max_amount: float = 10000.0,
        expiration_days: int = 1,
        call_timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._provider = provider
        self._reporter = reporter
        self._notifier = notifier
        self._currency = currency
        self._max_amount = to_decimal(max_amount)
        self._expiration = timedelta(days=expiration_days)
        self._call_timeout = call_timeout
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: OrderStore,
        provider: BasePaymentService,
        reporter: EventReporter,
        notifier: Optional[OrderNotifier] = None,
    ) -> "PaymentReconciler":
        return cls(
            store,
            provider,
            reporter,
            notifier=notifier,
            currency=settings.stripe_currency,
            max_amount=settings.payment_max_amount,
            expiration_days=settings.payment_link_expiration_days,
            call_timeout=settings.external_call_timeout_seconds,
        )

    @property
    def provider(self) -> BasePaymentService:
        return self._provider

    # =========================================================================
    # LINK GENERATION
    # =========================================================================

    def amount_to_cents(self, amount: Any, order_number: Optional[str] = None) -> int:
        """
        Validate an order total and convert it to minor units.

        Raises:
            PaymentAmountError: Not a positive finite amount below the ceiling
        """
        try:
            value = to_decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise PaymentAmountError(f"Invalid payment amount: {amount!r}", order_number=order_number)

        if not value.is_finite():
            raise PaymentAmountError(f"Payment amount is not finite: {amount!r}", order_number=order_number)
        if value > self._max_amount:
            raise PaymentAmountError(
                f"Payment amount {value} exceeds the {self._max_amount} ceiling",
                order_number=order_number,
            )

        cents = int(round_cents(value) * 100)
        if cents <= 0:
            raise PaymentAmountError(f"Payment amount must be positive: {value}", order_number=order_number)
        return cents

    def has_active_link(self, order: StoredOrder) -> bool:
        if not (order.payment_link_id and order.payment_link_url):
            return False
        if order.payment_status == "completed":
            return True
        if order.payment_status == "failed":
            return False
        expires_at = order.payment_link_expires_at
        return expires_at is None or expires_at > self._clock()

    async def generate_payment_link(self, order: Union[StoredOrder, str]) -> StoredOrder:
        """
        Attach a payment link to an order, reusing an active one.

        Returns:
            The stored order carrying the link fields

        Raises:
            PaymentAmountError: The order total cannot be charged
            TransientInfraError: Provider timeout or outage
            PermanentProcessingError: Provider rejected the request, or the
                order does not exist
        """
        order_number = order if isinstance(order, str) else order.order_number
        lock = self._locks.setdefault(order_number, asyncio.Lock())
        self._lock_users[order_number] = self._lock_users.get(order_number, 0) + 1

        try:
            async with lock:
                return await self._generate_locked(order_number)
        finally:
            users = self._lock_users[order_number] - 1
            if users:
                self._lock_users[order_number] = users
            else:
                del self._lock_users[order_number]
                del self._locks[order_number]

    async def _generate_locked(self, order_number: str) -> StoredOrder:
        lookup = await self._store.get_order(order_number, attempt_recovery=False)
        if not lookup.success:
            raise PermanentProcessingError(
                f"Cannot create payment link for unknown order #{order_number}",
                order_number=order_number,
            )
        order = lookup.order

        if self.has_active_link(order):
            self._store.register_payment_link(order.payment_link_id, order_number)
            self._reporter.info(
                CATEGORY,
                "Reusing existing payment link",
                order_id=order_number,
                correlation_id=order.correlation_id,
                data={"payment_link_id": order.payment_link_id},
            )
            return order

        amount_cents = self.amount_to_cents(order.order_total, order_number)
        metadata = {
            "orderNumber": order_number,
            "restaurantId": order.restaurant_id,
        }
        if order.correlation_id:
            metadata["correlationId"] = order.correlation_id

        try:
            result = await asyncio.wait_for(
                self._provider.create_payment_link(amount_cents, self._currency, metadata),
                self._call_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientInfraError(
                f"Payment provider timed out after {self._call_timeout:g}s",
                order_number=order_number,
            )

        if not result.success:
            self._reporter.raise_alert(
                AlertType.PAYMENT_FAILURE,
                f"Payment link creation failed: {result.error}",
                order_id=order_number,
                correlation_id=order.correlation_id,
                data={"error_code": result.error_code, "retryable": result.retryable},
            )
            error_cls = TransientInfraError if result.retryable else PermanentProcessingError
            raise error_cls(
                f"Payment link creation failed: {result.error}",
                order_number=order_number,
            )

        now = self._clock()
        updated = await self._store.update_order(order_number, {
            "paymentLinkId": result.id,
            "paymentLinkUrl": result.url,
            "paymentLinkCreatedAt": now,
            "paymentLinkExpiresAt": result.expires_at or now + self._expiration,
            "paymentStatus": "pending",
        })
        if not updated:
            raise PermanentProcessingError(
                f"Order #{order_number} disappeared while attaching payment link",
                order_number=order_number,
            )
        self._store.register_payment_link(result.id, order_number)

        self._reporter.info(
            CATEGORY,
            "Payment link created",
            order_id=order_number,
            correlation_id=order.correlation_id,
            data={
                "payment_link_id": result.id,
                "amount_cents": amount_cents,
                "provider": self._provider.provider_name,
            },
        )
        return (await self._store.get_order(order_number, attempt_recovery=False)).order

    # =========================================================================
    # PAYMENT EVENTS
    # =========================================================================

    async def _find_order(self, event: PaymentEvent) -> Optional[StoredOrder]:
        if event.payment_link_id:
            order = await self._store.get_order_by_payment_link_id(event.payment_link_id)
            if order is not None:
                return order
        if event.order_number:
            lookup = await self._store.get_order(event.order_number, attempt_recovery=False)
            return lookup.order
        return None

    async def handle_payment_event(self, event: Union[PaymentEvent, dict[str, Any]]) -> bool:
        """
        Apply an inbound payment status change.

        Returns:
            True if the event was applied (or was already applied)
        """
        if not isinstance(event, PaymentEvent):
            try:
                event = PaymentEvent.model_validate(event)
            except ValidationError as e:
                self._reporter.warning(
                    CATEGORY,
                    "Ignoring malformed payment event",
                    data={"errors": e.errors(include_url=False, include_context=False)},
                )
                return False

        order = await self._find_order(event)
        if order is None:
            self._reporter.raise_alert(
                AlertType.WEBHOOK_FAILURE,
                "No order found for payment event",
                data=event.model_dump(),
            )
            return False

        order_number = order.order_number
        current = order.payment_status

        if current == "completed":
            if event.status != "completed":
                self._reporter.warning(
                    CATEGORY,
                    f"Ignoring {event.status} event for a completed payment",
                    order_id=order_number,
                    correlation_id=order.correlation_id,
                )
                return False
            # Redelivered completion: only make sure the notification went out
            await self._notify(order)
            return True

        if event.status == current:
            return True
        if event.status == "pending":
            # failed -> pending is not a valid transition
            return False

        updates: dict[str, Any] = {
            "paymentStatus": event.status,
            "paymentTimestamp": self._clock(),
        }
        if event.transaction_id:
            updates["paymentTransactionId"] = event.transaction_id

        if not await self._store.update_order(order_number, updates):
            return False

        if event.status == "failed":
            self._reporter.raise_alert(
                AlertType.PAYMENT_FAILURE,
                "Payment failed",
                order_id=order_number,
                correlation_id=order.correlation_id,
                data={"transaction_id": event.transaction_id},
            )
            return True

        self._reporter.info(
            CATEGORY,
            "Payment completed",
            order_id=order_number,
            correlation_id=order.correlation_id,
            data={"transaction_id": event.transaction_id},
        )
        paid = (await self._store.get_order(order_number, attempt_recovery=False)).order
        await self._notify(paid)
        return True

    async def _notify(self, order: Optional[StoredOrder]) -> None:
        if self._notifier is not None and order is not None:
            await self._notifier.notify_once(order)
