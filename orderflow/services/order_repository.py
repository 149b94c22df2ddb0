"""
Order Repository

Durable half of the hybrid order store: plain async CRUD over the ``orders``
table. Retry policy and cache handling live in OrderStore; every method here
performs exactly one unit of work and lets database errors propagate.
"""

import logging
from typing import Any, Optional

from sqlalchemy import delete, select

from orderflow.database import SessionFactory
from orderflow.models import OrderRecord
from orderflow.schemas import VARIANT_FIELDS, StoredOrder, validate_order

logger = logging.getLogger(__name__)

# Orders rebuilt from context or synthesized never replace a richer row
_STATUS_RANK = {"placeholder": 0, "recovered": 1, "normal": 2}

_COLUMN_FIELDS = (
    "restaurant_id",
    "restaurant_name",
    "customer_name",
    "customer_email",
    "status",
    "estimated_time",
    "correlation_id",
    "subtotal",
    "tax",
    "processing_fee",
    "order_total",
    "payment_method",
    "payment_status",
    "payment_link_id",
    "payment_link_url",
    "payment_link_created_at",
    "payment_link_expires_at",
    "payment_transaction_id",
    "payment_timestamp",
    "notification_sent",
    "timestamp",
)


def order_to_columns(order: StoredOrder) -> dict[str, Any]:
    """Flatten a stored order into ``orders`` column values."""
    values = {name: getattr(order, name) for name in _COLUMN_FIELDS}
    values["items"] = [item.model_dump(mode="json", by_alias=True) for item in order.items]

    variant = VARIANT_FIELDS.get(order.status)
    if variant:
        dumped = order.model_dump(mode="json", include=set(variant))
        values["variant_data"] = dumped
    else:
        values["variant_data"] = None
    return values


def record_to_order(record: OrderRecord) -> StoredOrder:
    data = {name: getattr(record, name) for name in _COLUMN_FIELDS}
    data["order_number"] = record.order_number
    data["items"] = record.items or []
    data.update(record.variant_data or {})
    return validate_order(data)


class OrderRepository:
    """
    SQLAlchemy-backed order persistence.

    Args:
        session_factory: Async session factory from ``create_engine_and_sessionmaker``
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def save(self, order: StoredOrder) -> StoredOrder:
        """
        Insert or overwrite the row for ``order.order_number``.

        A recovered or placeholder order is not written over a row of a
        higher rank (normal over recovered over placeholder).

        Returns:
            The order the row holds afterwards: ``order`` itself when it was
            written, otherwise the existing order
        """
        values = order_to_columns(order)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(OrderRecord).where(OrderRecord.order_number == order.order_number)
                )
                record = result.scalar_one_or_none()

                if record is None:
                    session.add(OrderRecord(order_number=order.order_number, **values))
                    return order

                if _STATUS_RANK.get(order.status, 0) < _STATUS_RANK.get(record.status, 0):
                    logger.warning(
                        f"Refusing to replace {record.status} order #{order.order_number} "
                        f"with a {order.status} one"
                    )
                    return record_to_order(record)

                for key, value in values.items():
                    setattr(record, key, value)
                return order

    async def get(self, order_number: str) -> Optional[StoredOrder]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderRecord).where(OrderRecord.order_number == order_number)
            )
            record = result.scalar_one_or_none()
            return record_to_order(record) if record else None

    async def get_by_payment_link_id(self, payment_link_id: str) -> Optional[StoredOrder]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderRecord).where(OrderRecord.payment_link_id == payment_link_id)
            )
            record = result.scalars().first()
            return record_to_order(record) if record else None

    async def list_by_restaurant(self, restaurant_id: str) -> list[StoredOrder]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderRecord)
                .where(OrderRecord.restaurant_id == restaurant_id)
                .order_by(OrderRecord.timestamp)
            )
            return [record_to_order(r) for r in result.scalars()]

    async def delete(self, order_number: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(OrderRecord).where(OrderRecord.order_number == order_number)
                )
            return result.rowcount > 0
