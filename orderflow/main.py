"""
FastAPI Application Entry Point

Order Processing Pipeline - ingestion, queue inspection and payment webhooks.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /api/orders: Accept an order into the durable queue
    - GET /api/orders/{order_number}: Fetch a stored order
    - GET /api/restaurants/{restaurant_id}/orders: Orders for one restaurant
    - GET /api/queue/stats: Queue depth by status
    - GET /api/queue/items: Inspect queue items
    - POST /api/queue/items/{item_id}/replay: Send a dead letter back to pending
    - POST /webhook/stripe: Stripe payment events
    - GET /health: System health check
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as aioredis
from sqlalchemy import text

from orderflow.core.config import get_settings, setup_logging
from orderflow.core.exceptions import OrderValidationError
from orderflow.database import get_engine_and_sessionmaker, init_db
from orderflow.models import QueueStatus
from orderflow.schemas import (
    ErrorResponse,
    HealthResponse,
    OrderAcceptedResponse,
    OrderListResponse,
    QueueItemListResponse,
    QueueItemResponse,
    QueueStats,
    generate_order_number,
    parse_payload,
)
from orderflow.services.observability import create_correlation_id
from orderflow.services.payment.reconciler import parse_stripe_event
from orderflow.services.pipeline import Pipeline, get_pipeline

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


def pipeline_dependency() -> Pipeline:
    """Dependency injection for the wired pipeline components."""
    return get_pipeline()


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    missing = settings.validate_production_config()
    if missing and settings.is_production:
        logger.error(f"❌ Missing production configuration: {missing}")
    elif missing:
        logger.warning(f"⚠️  Missing production configuration: {missing}")

    engine, _ = get_engine_and_sessionmaker()
    await init_db(engine)
    pipeline = get_pipeline()

    stop_event = asyncio.Event()
    processor_task: Optional[asyncio.Task] = None
    if settings.run_processor_in_app:
        processor_task = asyncio.create_task(pipeline.processor.run_forever(stop_event))
        logger.info("✅ Queue processor running inside the API process")

    logger.info("✅ Application startup complete")

    yield

    # Shutdown
    logger.info("🛑 Shutting down application...")
    if processor_task is not None:
        stop_event.set()
        await processor_task
    pipeline.store.save_snapshot()
    await engine.dispose()
    logger.info("✅ Application shutdown complete")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="""
## Order Processing Pipeline

Accepts food orders, prices them and drives them through payment and
notification with at-least-once delivery.

### Flow
1. **Ingest**: POST /api/orders queues the order and returns 202
2. **Process**: the queue processor prices, stores and links each order
3. **Pay**: Stripe webhooks move the payment to completed or failed
4. **Notify**: the restaurant and customer are told once per order
    """,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HEALTH & STATUS ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root() -> dict[str, Any]:
    """Root endpoint - API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "docs": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(pipeline: Pipeline = Depends(pipeline_dependency)) -> HealthResponse:
    """
    Check health of all system components.

    Returns status of:
    - Database connection
    - Redis (Celery broker)
    - Payment service
    - Notification service
    - Queue depth
    """
    db_status = "healthy"
    queue_stats = QueueStats()
    try:
        async with pipeline.session_factory() as session:
            await session.execute(text("SELECT 1"))
        queue_stats = await pipeline.queue.stats()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_status = "unhealthy"

    # Redis is only needed when Celery drives the queue
    redis_status = "not used"
    if not pipeline.settings.run_processor_in_app:
        redis_status = "healthy"
        try:
            client = aioredis.Redis.from_url(
                pipeline.settings.redis_url, socket_timeout=2, socket_connect_timeout=2
            )
            await client.ping()
            await client.aclose()
        except Exception as e:
            redis_status = f"unhealthy: {str(e)}"
            logger.error(f"Redis health check failed: {e}")

    payment_provider = pipeline.reconciler.provider
    payment_healthy = await payment_provider.health_check()
    payment_status = f"{'healthy' if payment_healthy else 'unhealthy'} ({payment_provider.provider_name})"

    notification_provider = pipeline.notifier.service
    notification_healthy = await notification_provider.health_check()
    notification_status = (
        f"{'healthy' if notification_healthy else 'unhealthy'} ({notification_provider.provider_name})"
    )

    overall = "healthy" if (
        db_status == "healthy" and not redis_status.startswith("unhealthy") and payment_healthy
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        queue=queue_stats,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Submit Order",
)
async def create_order(
    order_data: dict[str, Any],
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> Any:
    """
    Accept an order into the durable queue.

    The payload is validated up front so malformed orders are rejected
    here instead of dead-lettering later. Pricing, payment and notification
    happen asynchronously in the queue processor.
    """
    try:
        payload = parse_payload(order_data)
    except OrderValidationError as e:
        logger.warning(f"Rejected order payload: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(error=e.message, detail=e.errors).model_dump(mode="json"),
        )

    correlation_id = create_correlation_id()
    data = dict(order_data)
    data["orderNumber"] = payload.order_number or generate_order_number()

    try:
        queue_id = await pipeline.queue.enqueue(data, correlation_id=correlation_id)
    except Exception as e:
        logger.exception(f"Error queueing order: {e}")
        raise HTTPException(status_code=500, detail="Order could not be queued")

    logger.info(f"Order #{data['orderNumber']} accepted as queue item {queue_id}")

    return OrderAcceptedResponse(
        message="Order received and queued for processing",
        queue_id=queue_id,
        order_number=data["orderNumber"],
        correlation_id=correlation_id,
    )


@app.get(
    "/api/orders/{order_number}",
    tags=["Orders"],
    summary="Get Order",
    responses={404: {"model": ErrorResponse}},
)
async def get_order(
    order_number: str,
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> dict[str, Any]:
    """Get a stored order by its order number."""
    lookup = await pipeline.store.get_order(order_number, attempt_recovery=False)
    if not lookup.success:
        raise HTTPException(status_code=404, detail=f"Order #{order_number} not found")

    return lookup.order.model_dump(mode="json", by_alias=True)


@app.get(
    "/api/restaurants/{restaurant_id}/orders",
    tags=["Orders"],
    summary="List Restaurant Orders",
)
async def list_restaurant_orders(
    restaurant_id: str,
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> dict[str, Any]:
    """List every stored order for a restaurant, oldest first."""
    orders = await pipeline.store.get_orders_by_restaurant(restaurant_id)
    response = OrderListResponse(total=len(orders), orders=orders)
    return response.model_dump(mode="json", by_alias=True)


# =============================================================================
# QUEUE ENDPOINTS
# =============================================================================

@app.get(
    "/api/queue/stats",
    response_model=QueueStats,
    tags=["Queue"],
    summary="Queue Statistics",
)
async def queue_stats(pipeline: Pipeline = Depends(pipeline_dependency)) -> QueueStats:
    return await pipeline.queue.stats()


@app.get(
    "/api/queue/items",
    response_model=QueueItemListResponse,
    tags=["Queue"],
    summary="List Queue Items",
)
async def list_queue_items(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> QueueItemListResponse:
    """List queue items, newest first. Use ``status=dead_letter`` to audit failures."""
    valid = {s.value for s in QueueStatus}
    if status_filter is not None and status_filter not in valid:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status. Must be one of: {sorted(valid)}",
        )

    items = await pipeline.queue.list_items(status=status_filter, limit=limit)
    return QueueItemListResponse(
        total=len(items),
        items=[QueueItemResponse.model_validate(item) for item in items],
    )


@app.post(
    "/api/queue/items/{item_id}/replay",
    tags=["Queue"],
    summary="Replay Queue Item",
    responses={409: {"model": ErrorResponse}},
)
async def replay_queue_item(
    item_id: int,
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> dict[str, Any]:
    """Send a failed or dead-lettered item back to pending."""
    if not await pipeline.queue.replay(item_id):
        raise HTTPException(
            status_code=409,
            detail=f"Queue item {item_id} not found or not failed/dead_letter",
        )
    return {"success": True, "queue_id": item_id, "status": QueueStatus.PENDING.value}


# =============================================================================
# WEBHOOK ENDPOINTS
# =============================================================================

@app.post(
    "/webhook/stripe",
    tags=["Webhooks"],
    summary="Stripe Payment Webhook",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    pipeline: Pipeline = Depends(pipeline_dependency),
) -> dict[str, Any]:
    """
    Receive payment events from Stripe.

    The signature is verified before anything is applied. Event types that
    do not affect payment status are acknowledged and ignored.
    """
    body = await request.body()
    provider = pipeline.reconciler.provider

    event = await provider.verify_webhook(body, stripe_signature or "")
    if not isinstance(event, dict):
        logger.warning("Rejected webhook with invalid signature or payload")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    payment_event = parse_stripe_event(event)
    if payment_event is None:
        logger.debug(f"Ignoring webhook event type: {event.get('type')}")
        return {"received": True, "handled": False}

    handled = await pipeline.reconciler.handle_payment_event(payment_event)
    return {"received": True, "handled": handled}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )

