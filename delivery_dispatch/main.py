"""
FastAPI Application Entry Point

Delivery Dispatch Core - order lifecycle, driver dispatch and live tracking.

Endpoints (under API_PREFIX, default /api):
    - POST   /orders: Create order
    - GET    /orders: List orders
    - GET    /orders/{id}: Get order
    - POST   /orders/{id}/accept: Driver accepts a READY order
    - PATCH  /orders/{id}: Status transition
    - POST   /drivers/location: Driver location tick
    - GET    /drivers/{id}/location: Latest driver location
Unprefixed:
    - WS     /ws/events: Live event feed (filter with ?orderId= / ?driverId=)
    - GET    /health: System health check

Mutating endpoints honour the Idempotency-Key header.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from delivery_dispatch.core.config import get_settings, setup_logging
from delivery_dispatch.database import dispose_engine, init_db
from delivery_dispatch.domain import ErrorCode, OrderResult, OrderStatus
from delivery_dispatch.schemas import (
    AcceptDeliveryRequest,
    DriverLocationReport,
    DriverLocationResponse,
    ErrorResponse,
    HealthResponse,
    LocationResponse,
    OrderCreate,
    OrderEnvelope,
    OrderListResponse,
    OrderResponse,
    StatusUpdateRequest,
    serialize_event,
)
from delivery_dispatch.services import (
    DispatchCoordinator,
    LocationReporter,
    get_dispatch_coordinator,
    get_location_reporter,
)
from delivery_dispatch.services.events import (
    EventKind,
    EventStream,
    LocationTracker,
    get_event_bus,
    get_location_tracker,
)
from delivery_dispatch.services.idempotency import (
    StoredResponse,
    get_idempotency_store,
    request_fingerprint,
)
from delivery_dispatch.services.notifications import attach_order_notifier
from delivery_dispatch.services.orders import get_order_store

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_ASSIGNED: 409,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.INVALID_TRANSITION: 400,
    ErrorCode.MISSING_FIELD: 400,
    ErrorCode.VALIDATION_ERROR: 400,
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    store = get_order_store()
    if store.backend_name == "sql":
        await init_db()
        logger.info("✅ Database initialized")
    logger.info(f"✅ Order Store: {store.backend_name}")

    bus = get_event_bus()
    get_location_tracker()
    notifier = None
    if settings.notifications_enabled:
        notifier = attach_order_notifier(bus)
        logger.info("✅ Customer notifications subscribed")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("✅ Application ready!")

    yield  # Application runs

    logger.info("Shutting down...")
    if notifier is not None:
        await notifier.aclose()
    await store.close()
    await dispose_engine()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Order lifecycle, driver dispatch and live tracking core.",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix=settings.api_prefix)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def error_response(error: ErrorCode, detail: Optional[str], headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES[error],
        content=ErrorResponse(error=error.value, detail=detail).to_json(),
        headers=headers,
    )


def order_response(result: OrderResult, status_code: int = 200) -> JSONResponse:
    """Map an OrderResult to its HTTP response."""
    if not result.success:
        return error_response(result.error, result.message)
    envelope = OrderEnvelope(order=OrderResponse.model_validate(result.order))
    return JSONResponse(status_code=status_code, content=envelope.to_json())


async def run_idempotent(
    request: Request,
    key: Optional[str],
    operation: Callable[[], Awaitable[JSONResponse]],
) -> JSONResponse:
    """
    Execute ``operation`` at most once per Idempotency-Key.

    Definitive answers (< 500) are recorded and replayed verbatim;
    server errors release the key so the client may retry.
    """
    if not key:
        return await operation()

    store = get_idempotency_store()
    ttl = settings.idempotency_ttl_seconds
    fingerprint = request_fingerprint(request.method, request.url.path, await request.body())

    stored = await store.get(key)
    if stored is None and not await store.reserve(key, ttl):
        stored = await store.get(key)
        if stored is None:
            return JSONResponse(
                status_code=503,
                content=ErrorResponse(
                    error="RequestInProgress",
                    detail="A request with this Idempotency-Key is still running",
                ).to_json(),
                headers={"Retry-After": "1"},
            )

    if stored is not None:
        if stored.fingerprint != fingerprint:
            return error_response(
                ErrorCode.VALIDATION_ERROR,
                "Idempotency-Key was already used for a different request",
            )
        logger.info(f"Replaying stored response for Idempotency-Key {key}")
        return JSONResponse(
            status_code=stored.status_code,
            content=stored.body,
            headers={"Idempotent-Replay": "true"},
        )

    try:
        response = await operation()
    except Exception:
        await store.release(key)
        raise

    if response.status_code < 500:
        await store.save(
            key,
            StoredResponse(response.status_code, json.loads(response.body), fingerprint),
            ttl,
        )
    else:
        await store.release(key)
    return response


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check() -> JSONResponse:
    """Verify all system components are operational."""
    store = get_order_store()
    store_status = "healthy" if await store.health_check() else "unhealthy"

    redis_status = "not used"
    if settings.use_real_services:
        redis_status = "healthy"
        try:
            client = aioredis.from_url(settings.redis_url, socket_timeout=2)
            await client.ping()
            await client.aclose()
        except Exception as e:
            redis_status = f"unhealthy: {str(e)}"
            logger.error(f"Redis health check failed: {e}")

    overall = "operational" if store_status == "healthy" and redis_status in ("healthy", "not used") else "degraded"
    bus = get_event_bus()

    return JSONResponse(HealthResponse(
        status=overall,
        environment=settings.env_mode.value,
        order_store=store_status,
        redis=redis_status,
        event_subscribers={kind.value: bus.subscriber_count(kind) for kind in EventKind},
        timestamp=datetime.now(),
    ).to_json())


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@router.post(
    "/orders",
    status_code=201,
    response_model=OrderEnvelope,
    responses={400: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    request: Request,
    body: OrderCreate,
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> JSONResponse:
    """Create a new PENDING order."""
    async def operation() -> JSONResponse:
        logger.info(f"Creating order for: {body.customer_name}")
        return order_response(await coordinator.create_order(body.to_draft()), status_code=201)

    return await run_idempotent(request, idempotency_key, operation)


@router.get(
    "/orders",
    response_model=OrderListResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None),
) -> JSONResponse:
    """Retrieve paginated list of orders, newest first."""
    status_filter = None
    if status:
        try:
            status_filter = OrderStatus.parse(status)
        except ValueError:
            return error_response(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid status. Options: {[s.value for s in OrderStatus]}",
            )

    total, orders = await get_order_store().list_orders(status_filter, limit=limit, offset=offset)
    return JSONResponse(OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    ).to_json())


@router.get(
    "/orders/{order_id}",
    response_model=OrderEnvelope,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
) -> JSONResponse:
    """Get a specific order by ID."""
    return order_response(await coordinator.get_order(order_id))


@router.post(
    "/orders/{order_id}/accept",
    response_model=OrderEnvelope,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Dispatch"],
    summary="Driver accepts a delivery",
)
async def accept_delivery(
    request: Request,
    order_id: str,
    body: AcceptDeliveryRequest,
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> JSONResponse:
    """
    Assign the calling driver to a READY order.

    Of concurrent accepts for the same order exactly one succeeds; the
    others get 409 AlreadyAssigned.
    """
    async def operation() -> JSONResponse:
        return order_response(await coordinator.accept_delivery(order_id, body.driver_id))

    return await run_idempotent(request, idempotency_key, operation)


@router.patch(
    "/orders/{order_id}",
    response_model=OrderEnvelope,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Dispatch"],
    summary="Change order status",
)
async def update_order_status(
    request: Request,
    order_id: str,
    body: StatusUpdateRequest,
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> JSONResponse:
    """Apply a state-machine transition."""
    async def operation() -> JSONResponse:
        return order_response(
            await coordinator.update_status(order_id, body.status, body.driver_id)
        )

    return await run_idempotent(request, idempotency_key, operation)


# =============================================================================
# DRIVER LOCATION ENDPOINTS
# =============================================================================

@router.post(
    "/drivers/location",
    response_model=DriverLocationResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Tracking"],
)
async def report_location(
    body: DriverLocationReport,
    reporter: LocationReporter = Depends(get_location_reporter),
) -> JSONResponse:
    """Ingest one driver position sample."""
    result = reporter.report_location(body.driver_id, body.location.to_sample())
    if not result.success:
        return error_response(result.error, result.message)

    event = result.event
    return JSONResponse(DriverLocationResponse(
        driver_id=event.driver_id,
        location=LocationResponse.model_validate(event.location),
        timestamp=event.timestamp,
    ).to_json())


@router.get(
    "/drivers/{driver_id}/location",
    response_model=DriverLocationResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Tracking"],
)
async def latest_location(
    driver_id: str,
    tracker: LocationTracker = Depends(get_location_tracker),
) -> JSONResponse:
    """Most recent location of a driver."""
    event = tracker.latest(driver_id)
    if event is None:
        return error_response(ErrorCode.NOT_FOUND, f"No location for driver {driver_id}")

    return JSONResponse(DriverLocationResponse(
        driver_id=event.driver_id,
        location=LocationResponse.model_validate(event.location),
        timestamp=event.timestamp,
    ).to_json())


app.include_router(router)


# =============================================================================
# LIVE EVENT FEED
# =============================================================================

@app.websocket("/ws/events")
async def event_feed(
    websocket: WebSocket,
    order_id: Optional[str] = Query(None, alias="orderId"),
    driver_id: Optional[str] = Query(None, alias="driverId"),
) -> None:
    """Push matching domain events to a live-tracking viewer."""
    order_driver_id = None
    if order_id:
        current = await get_order_store().get_order(order_id)
        if current.success:
            order_driver_id = current.order.driver_id

    # subscribe before accepting so nothing published after the handshake is missed
    async with EventStream(
        get_event_bus(),
        order_id=order_id,
        driver_id=driver_id,
        order_driver_id=order_driver_id,
    ) as stream:
        await websocket.accept()

        async def pump() -> None:
            while True:
                event = await stream.get()
                await websocket.send_json(serialize_event(event))

        sender = asyncio.create_task(pump())
        try:
            while True:
                # client messages are ignored; receiving detects disconnects
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Live viewer disconnected")
        finally:
            sender.cancel()


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are ValidationError (400), like every other input problem."""
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return error_response(ErrorCode.VALIDATION_ERROR, problems)


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
