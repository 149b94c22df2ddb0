"""
Pydantic Schemas for Orders, Queue and API Payloads

Orders travel as camelCase JSON (``orderNumber``, ``unitPrice``) and are
snake_case in Python. A stored order is one of three tagged variants,
discriminated on ``status``:

- NormalOrder: created from a validated ingestion payload
- RecoveredOrder: rebuilt from partial conversation context
- PlaceholderOrder: synthesized so a promised order number never 404s
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from orderflow.core.exceptions import OrderValidationError

PaymentMethod = Literal["online", "window"]
PaymentStatus = Literal["pending", "completed", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:10].upper()}"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )


# =============================================================================
# ORDERS
# =============================================================================

class OrderItem(CamelModel):
    """Single line item. Accepts ``qty`` and ``price`` from older producers."""
    name: str = Field(..., min_length=1, max_length=100, examples=["Burger"])
    quantity: int = Field(
        ...,
        gt=0,
        validation_alias=AliasChoices("quantity", "qty"),
        serialization_alias="quantity",
        examples=[2],
    )
    unit_price: float = Field(
        ...,
        ge=0,
        validation_alias=AliasChoices("unitPrice", "unit_price", "price"),
        serialization_alias="unitPrice",
        examples=[8.99],
    )
    special_instructions: Optional[str] = Field(None, max_length=500)


class OrderBase(CamelModel):
    """Fields every stored order carries, whatever its variant."""
    order_number: str = Field(..., min_length=1, max_length=64)
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    restaurant_name: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    customer_email: Optional[str] = None
    items: list[OrderItem] = Field(..., min_length=1)

    # Pricing (always produced by PriceCalculator)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    processing_fee: float = Field(..., ge=0)
    order_total: float = Field(..., ge=0)

    # Payment
    payment_method: PaymentMethod = "online"
    payment_status: PaymentStatus = "pending"
    payment_link_id: Optional[str] = None
    payment_link_url: Optional[str] = None
    payment_link_created_at: Optional[datetime] = None
    payment_link_expires_at: Optional[datetime] = None
    payment_transaction_id: Optional[str] = None
    payment_timestamp: Optional[datetime] = None

    notification_sent: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    estimated_time: int = Field(default=15, ge=0)
    correlation_id: Optional[str] = None

    @field_validator(
        "timestamp",
        "payment_link_created_at",
        "payment_link_expires_at",
        "payment_timestamp",
    )
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class NormalOrder(OrderBase):
    status: Literal["normal"] = "normal"


class RecoveredOrder(OrderBase):
    status: Literal["recovered"] = "recovered"
    recovered_at: datetime = Field(default_factory=utcnow)
    recovery_source: str = "conversation_context"

    @field_validator("recovered_at")
    @classmethod
    def _recovered_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class PlaceholderOrder(OrderBase):
    status: Literal["placeholder"] = "placeholder"
    placeholder_reason: str = "order not found in storage"


StoredOrder = Annotated[
    Union[NormalOrder, RecoveredOrder, PlaceholderOrder],
    Field(discriminator="status"),
]

stored_order_adapter: TypeAdapter[StoredOrder] = TypeAdapter(StoredOrder)

VARIANT_FIELDS = {
    "recovered": ("recovered_at", "recovery_source"),
    "placeholder": ("placeholder_reason",),
}


def validate_order(data: Union[BaseModel, dict[str, Any]]) -> StoredOrder:
    """
    Validate an order payload into its tagged variant.

    Dicts without a ``status`` are treated as normal orders.

    Raises:
        OrderValidationError: The payload is not a valid order
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    else:
        data = {"status": "normal", **data}

    try:
        return stored_order_adapter.validate_python(data)
    except ValidationError as e:
        raise OrderValidationError(
            f"Invalid order: {e.error_count()} validation error(s)",
            order_number=data.get("orderNumber", data.get("order_number")),
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def order_field_alias(key: str) -> str:
    """Map a camelCase key onto its snake_case field name."""
    for model in (NormalOrder, RecoveredOrder, PlaceholderOrder):
        for name, info in model.model_fields.items():
            if key == name or key == info.alias:
                return name
    return key


# =============================================================================
# INGESTION
# =============================================================================

class OrderPayload(CamelModel):
    """
    Raw order handed to the queue by the ingestion side.

    Only the restaurant and the cart are mandatory; everything else has a
    sensible default so partially filled payloads can still be priced.
    """
    model_config = ConfigDict(extra="ignore")

    order_number: Optional[str] = Field(None, min_length=1, max_length=64)
    restaurant_id: str = Field(..., min_length=1, max_length=64, examples=["r1"])
    restaurant_name: str = Field(default="Unknown Restaurant", min_length=1)
    customer_name: str = Field(default="Unknown Customer", min_length=1)
    customer_email: Optional[str] = Field(None, examples=["john@example.com"])
    items: list[OrderItem] = Field(..., min_length=1)
    payment_method: PaymentMethod = "online"
    estimated_time: int = Field(default=15, ge=0)

    @field_validator("restaurant_id", mode="before")
    @classmethod
    def coerce_restaurant_id(cls, v: Any) -> Any:
        # Numeric ids from older producers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        # Basic email validation
        if not re.match(r'^[\w\.\+-]+@[\w\.-]+\.\w+$', v):
            raise ValueError('Invalid email format')
        return v


def parse_payload(data: dict[str, Any]) -> OrderPayload:
    """
    Raises:
        OrderValidationError: The payload cannot become an order
    """
    try:
        return OrderPayload.model_validate(data)
    except ValidationError as e:
        raise OrderValidationError(
            f"Invalid order payload: {e.error_count()} validation error(s)",
            order_number=data.get("orderNumber"),
            errors=e.errors(include_url=False, include_context=False),
        ) from e


class ConversationContext(CamelModel):
    """
    Partial in-flight state left by the conversational front end.

    Cart lines are loosely shaped, so they stay plain dicts here and are
    normalised during recovery.
    """
    model_config = ConfigDict(extra="ignore")

    selected_restaurant_id: Optional[str] = None
    selected_restaurant_name: Optional[str] = None
    cart_items: list[dict[str, Any]] = Field(default_factory=list)
    cart: Optional[dict[str, Any]] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    payment_method: PaymentMethod = "online"

    @field_validator("selected_restaurant_id", mode="before")
    @classmethod
    def coerce_restaurant_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def lines(self) -> list[dict[str, Any]]:
        """Cart lines from ``cartItems``, falling back to ``cart.items``."""
        if self.cart_items:
            return self.cart_items
        if self.cart and isinstance(self.cart.get("items"), list):
            return self.cart["items"]
        return []


# =============================================================================
# PAYMENT EVENTS
# =============================================================================

class PaymentEvent(CamelModel):
    """Inbound payment status change (webhook or poll)."""
    payment_link_id: Optional[str] = None
    transaction_id: Optional[str] = None
    order_number: Optional[str] = None
    status: PaymentStatus


# =============================================================================
# API RESPONSE SCHEMAS
# =============================================================================

class OrderAcceptedResponse(BaseModel):
    """Response after an order is accepted into the queue."""
    success: bool = True
    message: str
    queue_id: int
    order_number: str
    correlation_id: str


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: list[StoredOrder]


class QueueStats(BaseModel):
    """Queue depth by status."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0
    total: int = 0


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_data: dict[str, Any]
    auth0_user: Optional[dict[str, Any]] = None
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueItemListResponse(BaseModel):
    total: int
    items: list[QueueItemResponse]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[Any] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    queue: QueueStats
    timestamp: datetime
