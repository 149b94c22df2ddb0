"""
Order Notifier

Sends the order notification at most once per order: the ``notificationSent``
flag on the stored order is the guard. Delivery is bounded by a timeout and
never fails the caller.
"""

import asyncio
import logging

from orderflow.schemas import StoredOrder
from orderflow.services.notifications.base import BaseNotificationService
from orderflow.services.observability import EventReporter
from orderflow.services.order_store import OrderStore

logger = logging.getLogger(__name__)

CATEGORY = "NOTIFICATION"


class OrderNotifier:
    def __init__(
        self,
        service: BaseNotificationService,
        store: OrderStore,
        reporter: EventReporter,
        timeout: float = 15.0,
    ):
        self.service = service
        self._store = store
        self._reporter = reporter
        self._timeout = timeout

    async def notify_once(self, order: StoredOrder) -> bool:
        """
        Notify about ``order`` unless that already happened.

        Returns:
            True if the order has (now) been notified
        """
        if order.notification_sent:
            return True

        try:
            delivered = await asyncio.wait_for(self.service.notify(order), self._timeout)
        except asyncio.TimeoutError:
            self._reporter.warning(
                CATEGORY,
                f"Notification timed out after {self._timeout:g}s",
                order_id=order.order_number,
                correlation_id=order.correlation_id,
            )
            return False
        except Exception as e:
            self._reporter.error(
                CATEGORY,
                "Notification failed",
                order_id=order.order_number,
                correlation_id=order.correlation_id,
                data={"error": str(e)},
            )
            return False

        if not delivered:
            self._reporter.warning(
                CATEGORY,
                "Notification was not delivered",
                order_id=order.order_number,
                correlation_id=order.correlation_id,
            )
            return False

        await self._store.update_order(order.order_number, {"notificationSent": True})
        self._reporter.info(
            CATEGORY,
            f"Notification sent via {self.service.provider_name}",
            order_id=order.order_number,
            correlation_id=order.correlation_id,
        )
        return True
