"""
SQLAlchemy Database Models

- QueueItem: persisted order-processing job (table ``order_queue``). The
  column names and status strings are a wire contract with existing rows.
- OrderRecord: durable copy of a stored order (table ``orders``).
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.sql import func

from orderflow.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStatus(str, enum.Enum):
    """Queue item state machine."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class QueueItem(Base):
    """
    A unit of deferred order-processing work with its own retry state.

    ``status`` is stored as its plain string value so rows written by other
    producers stay readable.
    """
    __tablename__ = "order_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # =========================================================================
    # PAYLOAD
    # =========================================================================
    order_data = Column(JSON, nullable=False)
    auth0_user = Column(JSON, nullable=True)

    # =========================================================================
    # STATE
    # =========================================================================
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_order_queue_status_next_attempt", "status", "next_attempt_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_data": self.order_data,
            "auth0_user": self.auth0_user,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_message": self.error_message,
            "correlation_id": self.correlation_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "processing_started_at": _iso(self.processing_started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<QueueItem #{self.id} - {self.status} - attempts {self.attempts}/{self.max_attempts}>"


class OrderRecord(Base):
    """Durable copy of a StoredOrder, keyed by order number."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(64), nullable=False, unique=True, index=True)

    # =========================================================================
    # RESTAURANT & CUSTOMER
    # =========================================================================
    restaurant_id = Column(String(64), nullable=False, index=True)
    restaurant_name = Column(String(255), nullable=False)
    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(255), nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="normal")
    # Variant-only fields (recovery source, placeholder reason)
    variant_data = Column(JSON, nullable=True)
    estimated_time = Column(Integer, nullable=False, default=15)
    correlation_id = Column(String(64), nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    tax = Column(Float, nullable=False)
    processing_fee = Column(Float, nullable=False, default=0.0)
    order_total = Column(Float, nullable=False)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_method = Column(String(20), nullable=False, default="online")
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_link_id = Column(String(100), nullable=True, index=True)
    payment_link_url = Column(String(500), nullable=True)
    payment_link_created_at = Column(DateTime(timezone=True), nullable=True)
    payment_link_expires_at = Column(DateTime(timezone=True), nullable=True)
    payment_transaction_id = Column(String(100), nullable=True)
    payment_timestamp = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================
    notification_sent = Column(Boolean, nullable=False, default=False)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<OrderRecord #{self.order_number} - {self.restaurant_id} - {self.status}>"


def _iso(value):
    return value.isoformat() if value is not None else None
